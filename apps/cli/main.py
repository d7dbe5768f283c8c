"""`llmstream` CLI: run completions against a local model.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from apps.cli.options import add_model_arguments, add_parameter_arguments, parameters_from_args
from apps.cli.output import print_json
from llmstream.engine.errors import StreamError
from llmstream.engine.generate import stream_completion
from llmstream.engine.model import load_model
from llmstream.engine.types import CompletionRequest


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="llmstream", description="Cache-reusing text generation CLI")
    p.add_argument(
        "--log-level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Logging level (default: %(default)s)",
    )

    sub = p.add_subparsers(dest="command")

    predict_p = sub.add_parser("predict", help="Generate a completion for a prompt")
    add_model_arguments(predict_p)
    predict_p.add_argument("--prompt", help="Prompt text (default: read stdin)")
    predict_p.add_argument(
        "--stop",
        action="append",
        default=[],
        help="Stop generating when this string appears (repeatable)",
    )
    predict_p.add_argument("--json", action="store_true", help="Print one JSON result instead of streaming text")
    add_parameter_arguments(predict_p)

    tokenize_p = sub.add_parser("tokenize", help="Print the token ids of a text")
    add_model_arguments(tokenize_p)
    tokenize_p.add_argument("text", help="Text to tokenize")

    return p


def _cmd_predict(args: argparse.Namespace) -> int:
    params = parameters_from_args(args)
    prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    request = CompletionRequest(prompt=prompt, parameters=params, stop=list(args.stop))

    with load_model(args.model, backend=args.backend, device=args.device, dtype=args.dtype) as model:
        run = stream_completion(model, request)
        if args.json:
            for _ in run:
                pass
            result = run.result()
            print_json(
                {
                    "content": result.text,
                    "finish_reason": result.finish_reason,
                    "tokens_evaluated": result.prompt_tokens,
                    "tokens_predicted": result.completion_tokens,
                    "seed": result.seed,
                }
            )
            return 0

        for piece in run:
            sys.stdout.write(piece)
            sys.stdout.flush()
        sys.stdout.write("\n")
        print(f"[{run.finish_reason}] seed={run.seed} tokens={len(run.tokens)}", file=sys.stderr)
    return 0


def _cmd_tokenize(args: argparse.Namespace) -> int:
    with load_model(args.model, backend=args.backend, device=args.device, dtype=args.dtype) as model:
        print_json(model.encode(args.text))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "predict":
            return _cmd_predict(args)
        if args.command == "tokenize":
            return _cmd_tokenize(args)
    except (StreamError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
