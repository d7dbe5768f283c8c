"""FastAPI app exposing llama.cpp-server style completion endpoints.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the core engine (`llmstream/engine`).
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Iterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from llmstream.engine.errors import EvaluationError, InputTooLargeError, SamplingError
from llmstream.engine.generate import CompletionRun, stream_completion
from llmstream.engine.types import CompletionRequest, Parameters

logger = logging.getLogger(__name__)


def create_app(
    *,
    model: Any,
    model_id: str,
    defaults: Parameters | None = None,
) -> FastAPI:
    app = FastAPI(title="llmstream Inference Server", version="0.1.0")

    defaults = defaults or Parameters()

    # One model handle, one stream at a time.
    _model_lock = threading.Lock()

    async def _json_object(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
        if isinstance(payload, dict):
            return payload
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    def _final_payload(run: CompletionRun) -> dict[str, Any]:
        result = run.result()
        return {
            "content": result.text,
            "stop": True,
            "model": model_id,
            "finish_reason": result.finish_reason,
            "tokens_predicted": result.completion_tokens,
            "tokens_evaluated": result.prompt_tokens,
            "seed": result.seed,
        }

    # -------------------------------------------------------------------------
    # Health & Props
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/props")
    async def props() -> dict[str, Any]:
        info = dict(getattr(model, "model_info", {}) or {})
        return {
            "model": model_id,
            "n_ctx": info.get("n_ctx"),
            "bos": info.get("bos"),
            "eos": info.get("eos"),
            "nl": info.get("nl"),
            "default_generation_settings": defaults.to_dict(),
        }

    # -------------------------------------------------------------------------
    # Tokenization
    # -------------------------------------------------------------------------

    @app.post("/tokenize")
    async def tokenize(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        content = payload.get("content", "")
        if not isinstance(content, str):
            raise HTTPException(status_code=400, detail="'content' must be a string.")
        return {"tokens": model.encode(content)}

    @app.post("/detokenize")
    async def detokenize(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        tokens = payload.get("tokens", [])
        if not isinstance(tokens, list) or not all(isinstance(t, int) and not isinstance(t, bool) for t in tokens):
            raise HTTPException(status_code=400, detail="'tokens' must be a list of integers.")
        return {"content": model.decode(tokens)}

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    @app.post("/completion")
    async def completion(request: Request):
        payload = await _json_object(request)
        try:
            req = CompletionRequest.from_dict(payload, defaults=defaults)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if payload.get("stream"):
            return StreamingResponse(_sse(req), media_type="text/event-stream")

        def _run() -> dict[str, Any]:
            with _model_lock:
                run = stream_completion(model, req)
                for _ in run:
                    pass
                return _final_payload(run)

        try:
            body = await asyncio.to_thread(_run)
        except InputTooLargeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except (EvaluationError, SamplingError) as exc:
            logger.warning("completion failed: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return JSONResponse(body)

    def _sse(req: CompletionRequest) -> Iterator[str]:
        # Starlette iterates sync generators in a worker thread.
        with _model_lock:
            run = stream_completion(model, req)
            try:
                for piece in run:
                    yield _sse_event({"content": piece, "stop": False})
            except (InputTooLargeError, EvaluationError, SamplingError) as exc:
                logger.warning("streamed completion failed: %s", exc)
                yield _sse_event({"error": str(exc), "stop": True})
                return
            yield _sse_event(_final_payload(run))

    return app


def _sse_event(obj: dict[str, Any]) -> str:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n"
