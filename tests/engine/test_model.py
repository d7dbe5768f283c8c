import pytest

from llmstream.engine import registry
from llmstream.engine.errors import EvaluationError, InputTooLargeError, ModelLoadError
from llmstream.engine.model import Model, load_model
from llmstream.engine.session import StreamState
from llmstream.engine.types import Parameters


def test_load_model_with_backend_instance(make_backend):
    backend = make_backend()
    model = load_model("some/model", backend=backend, device="cpu")
    assert backend.loaded
    assert backend.load_kwargs == {"device": "cpu"}
    assert model.n_ctx_train == 2048
    assert (model.bos, model.eos, model.nl) == (1, 2, 13)
    model.close()


def test_load_failure_is_wrapped(make_backend):
    class Broken(make_backend):
        def load(self, model_path, **kwargs):
            raise OSError("no such file")

    with pytest.raises(ModelLoadError, match="no such file"):
        load_model("missing", backend=Broken())


def test_load_model_by_registered_name(make_backend, monkeypatch):
    monkeypatch.setitem(registry._BACKENDS, "fake", make_backend)
    assert "fake" in registry.list_backends()
    with load_model("m", backend="fake") as model:
        assert isinstance(model.backend, make_backend)


def test_unknown_backend_name():
    with pytest.raises(ValueError, match="Unknown backend"):
        registry.get_backend("nope")


@pytest.mark.parametrize("kwargs", [{"n_ctx_train": 0}, {"eos": None}])
def test_missing_metadata_releases_backend(make_backend, kwargs):
    backend = make_backend(**kwargs)
    with pytest.raises(ModelLoadError):
        Model(backend, model_path="bad")
    assert backend.unloaded == 1


def test_predict_prepends_bos(model, backend):
    stream = model.predict(Parameters(), model.encode("ab"))
    assert backend.decoded == [(0, [1, 20, 21])]
    stream.close()


def test_predict_without_bos(make_backend):
    backend = make_backend(bos=None)
    with Model(backend) as model:
        stream = model.predict(Parameters(), [20, 21])
        assert backend.decoded == [(0, [20, 21])]
        stream.close()


def test_predict_reuses_pooled_stream(model, backend):
    first = model.predict(Parameters(), [20, 21])
    first.close()
    backend.decoded.clear()

    second = model.predict(Parameters(), [20, 21, 22])

    assert second is first
    assert second.state is StreamState.ACTIVE
    assert model.pool.peek() is None
    assert backend.decoded == [(3, [22])]
    second.close()


def test_predict_with_active_stream_creates_new_context(model, backend):
    first = model.predict(Parameters(), [20])
    second = model.predict(Parameters(), [20])
    assert second is not first
    assert len(backend.contexts) == 2
    first.close()
    second.close()
    # Only the most recently closed stream is kept.
    assert first.state is StreamState.FREED
    assert model.pool.peek() is second


def test_resume_too_large_returns_stream_to_pool(make_backend):
    with Model(make_backend(n_ctx_train=10)) as model:
        stream = model.predict(Parameters(), [20])
        stream.close()

        with pytest.raises(InputTooLargeError):
            model.predict(Parameters(), [20] * 12)

        assert model.pool.peek() is stream
        assert stream.state is StreamState.POOLED
        assert stream.history == [1, 20]


def test_resume_failure_frees_stream(model, backend):
    stream = model.predict(Parameters(), [20])
    stream.close()
    backend.fail_code = -1

    with pytest.raises(EvaluationError):
        model.predict(Parameters(), [20, 21])

    assert stream.state is StreamState.FREED
    assert model.pool.peek() is None


def test_predict_resolves_seed_without_touching_caller(model):
    params = Parameters(seed=0)
    stream = model.predict(params, [20])
    assert params.seed == 0
    assert 0 < stream.params.seed < (1 << 32)
    stream.close()

    fixed = model.predict(Parameters(seed=42), [20])
    assert fixed.params.seed == 42
    fixed.close()


def test_invalid_parameters_rejected(model):
    with pytest.raises(ValueError):
        model.predict(Parameters(mirostat=3), [20])


def test_close_frees_pooled_stream_and_unloads_once(make_backend):
    backend = make_backend()
    model = Model(backend)
    stream = model.predict(Parameters(), [20])
    stream.close()

    model.close()
    model.close()

    assert stream.state is StreamState.FREED
    assert backend.unloaded == 1
    with pytest.raises(RuntimeError):
        model.predict(Parameters(), [20])


def test_decode_trims_one_leading_space(model):
    assert model.decode([7]) == "x"
    assert model.decode([3, 3, 20]) == " a"
    assert model.decode([20]) == "a"
    assert model.encode("a b") == [20, 3, 21]


def test_model_info(model):
    info = model.model_info
    assert info["n_ctx"] == 2048
    assert info["eos"] == 2


def test_invalid_parameters_keep_pooled_cache(model, backend):
    stream = model.predict(Parameters(), [20, 21])
    stream.close()

    with pytest.raises(ValueError):
        model.predict(Parameters(top_p=2.0), [20, 21, 22])

    assert model.pool.peek() is stream
    assert stream.state is StreamState.POOLED
    assert stream.history == [1, 20, 21]


def test_stream_closed_after_model_close_is_freed(make_backend):
    backend = make_backend()
    model = Model(backend)
    stream = model.predict(Parameters(), [20])

    model.close()
    stream.close()

    assert model.closed
    assert stream.state is StreamState.FREED
    assert stream.context is None
    assert backend.contexts[0].freed
    assert model.pool.peek() is None


def test_register_backend_rejects_duplicates_and_non_backends(make_backend, monkeypatch):
    monkeypatch.setattr(registry, "_BACKENDS", dict(registry._BACKENDS))
    registry.register_backend("fake", make_backend)
    with pytest.raises(ValueError, match="already registered"):
        registry.register_backend("fake", make_backend)
    registry.register_backend("fake", make_backend, replace=True)
    with pytest.raises(TypeError):
        registry.register_backend("dict", dict)


def test_backend_import_path_resolved_on_first_use(monkeypatch):
    monkeypatch.setattr(registry, "_BACKENDS", dict(registry._BACKENDS))
    registry.register_backend("by-path", "llmstream.engine.backends.transformers:TransformersBackend")
    backend = registry.get_backend("by-path")
    assert type(backend).__name__ == "TransformersBackend"
    assert not backend.model_info["loaded"]
    assert isinstance(registry._BACKENDS["by-path"], type)


def test_import_path_to_non_backend_is_rejected(monkeypatch):
    monkeypatch.setattr(registry, "_BACKENDS", dict(registry._BACKENDS))
    registry.register_backend("bogus", "collections:OrderedDict")
    with pytest.raises(TypeError):
        registry.get_backend("bogus")


def test_resolve_backend_passes_instances_through(make_backend):
    backend = make_backend()
    assert registry.resolve_backend(backend) is backend
    with pytest.raises(TypeError):
        registry.resolve_backend(42)


def test_builtin_backends_listed():
    assert "transformers" in registry.list_backends()
