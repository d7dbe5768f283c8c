"""Command-line flags shared by the CLI and the server entrypoint."""

from __future__ import annotations

import argparse
import json
from dataclasses import fields

from llmstream.engine.types import Parameters

_HELP = {
    "temperature": "Sampling temperature, <= 0 is greedy",
    "penalize_newline": "Let the repetition penalty apply to newlines",
    "top_k": "Top-k filter, <= 0 disables",
    "top_p": "Nucleus filter, 1.0 disables",
    "n_predict": "Tokens to generate, -1 = until end of stream",
    "tfs_z": "Tail free sampling z, 1.0 disables",
    "typical_p": "Locally typical sampling p, 1.0 disables",
    "repeat_penalty": "Repetition penalty",
    "repeat_last_n": "Repetition penalty window, 0 disables, -1 = whole history",
    "presence_penalty": "Presence penalty",
    "frequency_penalty": "Frequency penalty",
    "mirostat": "Mirostat mode: 0 off, 1 Mirostat, 2 Mirostat 2.0",
    "mirostat_tau": "Mirostat target entropy",
    "mirostat_eta": "Mirostat learning rate",
    "seed": "Random seed, 0 picks one",
}


def add_model_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--model", required=True, help="Model path or HF repo id")
    p.add_argument("--device", default=None, help="Torch device (default: best available)")
    p.add_argument("--dtype", default=None, help="Torch dtype: float16|bfloat16|float32")
    p.add_argument("--backend", default="transformers", help="Inference backend (default: %(default)s)")


def add_parameter_arguments(p: argparse.ArgumentParser) -> None:
    group = p.add_argument_group("sampling parameters")
    group.add_argument(
        "--params",
        default=None,
        help="JSON object of parameters using llama.cpp names (flags below take precedence)",
    )
    defaults = Parameters()
    for f in fields(Parameters):
        flag = "--" + f.name.replace("_", "-")
        default = getattr(defaults, f.name)
        if isinstance(default, bool):
            group.add_argument(
                flag,
                dest=f.name,
                action=argparse.BooleanOptionalAction,
                default=None,
                help=f"{_HELP[f.name]} (default: {default})",
            )
        else:
            group.add_argument(
                flag,
                dest=f.name,
                type=type(default),
                default=None,
                help=f"{_HELP[f.name]} (default: {default})",
            )


def parameters_from_args(args: argparse.Namespace) -> Parameters:
    params = Parameters()
    if getattr(args, "params", None):
        try:
            override = json.loads(args.params)
        except json.JSONDecodeError as exc:
            raise ValueError(f"--params is not valid JSON: {exc}") from exc
        params = params.merged(override)

    flags = {f.name: getattr(args, f.name, None) for f in fields(Parameters)}
    return params.merged({k: v for k, v in flags.items() if v is not None})
