"""llmstream inference server entrypoint (FastAPI + llama.cpp-style completion API).

Example:
    python -m apps.server.main --model gpt2 --host 0.0.0.0 --port 8787
"""

from __future__ import annotations

import argparse
import logging
import os

from apps.cli.options import add_model_arguments, add_parameter_arguments, parameters_from_args
from apps.server.app import create_app
from llmstream.engine.model import load_model


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="llmstream inference server")
    add_model_arguments(p)
    p.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")
    p.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging level (default: %(default)s)",
    )
    add_parameter_arguments(p)
    return p.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    defaults = parameters_from_args(args)

    print(
        f"[server] loading model... model={args.model!r} backend={args.backend!r} "
        f"device={args.device!r} dtype={args.dtype!r}",
        flush=True,
    )
    model = load_model(args.model, backend=args.backend, device=args.device, dtype=args.dtype)
    print(f"[server] model loaded: n_ctx={model.n_ctx_train}", flush=True)

    model_id = os.path.basename(args.model.rstrip("/")) or "llmstream"
    app = create_app(model=model, model_id=model_id, defaults=defaults)

    try:
        import uvicorn
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("uvicorn is required to run the server.") from exc

    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    finally:
        model.close()


if __name__ == "__main__":
    main()
