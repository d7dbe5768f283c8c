# Session engine
#
# This package turns a loaded model into lazily generated token streams that
# reuse the KV cache of the previous request.
#
# Key components:
#   - backends/     Inference backends (the external engine boundary)
#   - registry.py   Backend lookup by name (lazily imported)
#   - overlap.py    Longest reusable prefix between a request and the cache
#   - cache.py      KV cache range removal / shifting
#   - evaluator.py  Appends tokens to a session's evaluated history
#   - sampler.py    Next-token selection policy
#   - session.py    Streams and the single-slot session pool
#   - model.py      Model loading and stream creation
#   - generate.py   Shared text generation / streaming logic
