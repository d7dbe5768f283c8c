import pytest

torch = pytest.importorskip("torch")
transformers = pytest.importorskip("transformers")

from llmstream.engine.backends.transformers import TransformersBackend  # noqa: E402
from llmstream.engine.errors import EndOfStream  # noqa: E402
from llmstream.engine.model import Model  # noqa: E402
from llmstream.engine.types import Parameters  # noqa: E402

VOCAB = 32
EOS = VOCAB - 1


class _CharTokenizer:
    """Just enough of a tokenizer for the backend: one id per character."""

    bos_token_id = None
    eos_token_id = EOS

    def encode(self, text, add_special_tokens=False):
        return [ord(ch) % EOS for ch in text]

    def decode(self, ids, skip_special_tokens=False):
        return "".join(chr(ord("a") + i % 26) for i in ids)

    def __len__(self):
        return VOCAB


@pytest.fixture(scope="module")
def tiny_llama():
    torch.manual_seed(0)
    config = transformers.LlamaConfig(
        vocab_size=VOCAB,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=64,
    )
    return transformers.LlamaForCausalLM(config).to(torch.float32)


@pytest.fixture
def backend(tiny_llama):
    b = TransformersBackend()
    b.attach(tiny_llama, _CharTokenizer(), model_path="tiny-llama")
    return b


@pytest.fixture
def model(backend):
    m = Model(backend, model_path="tiny-llama")
    yield m
    m.close()


def _fresh_logits(backend, history):
    ctx = backend.new_context(backend.n_ctx_train, seed=1)
    assert backend.decode(ctx, 0, history) == 0
    return ctx.logits


def _assert_matches_fresh_decode(backend, stream):
    ctx = stream.context
    assert ctx.logits_pos == len(stream.history) - 1
    assert [tok for _, tok in ctx.cells] == stream.history
    assert [pos for pos, _ in ctx.cells] == list(range(len(stream.history)))
    torch.testing.assert_close(ctx.logits, _fresh_logits(backend, stream.history), atol=1e-4, rtol=1e-4)


def test_attach_reads_model_metadata(backend):
    assert backend.n_ctx_train == 64
    assert backend.n_vocab == VOCAB
    assert backend.token_bos() is None
    assert backend.token_eos() == EOS
    assert backend.token_nl() == ord("\n") % EOS
    assert backend.model_info["loaded"]


def test_growing_resume_appends(model, backend):
    stream = model.predict(Parameters(), [3, 4, 5])
    stream.close()

    stream = model.predict(Parameters(), [3, 4, 5, 6, 7])

    assert stream.history == [3, 4, 5, 6, 7]
    assert not stream.context.stale
    _assert_matches_fresh_decode(backend, stream)
    stream.close()


def test_suffix_trim_resume_crops_cache(model, backend):
    stream = model.predict(Parameters(), [3, 4, 5, 6, 7])
    stream.close()

    stream = model.predict(Parameters(), [3, 4, 9])

    ctx = stream.context
    assert stream.history == [3, 4, 9]
    assert not ctx.stale
    assert ctx.past_key_values.get_seq_length() == 3
    _assert_matches_fresh_decode(backend, stream)
    stream.close()


def test_window_shift_resume_rebuilds_cache(model, backend):
    stream = model.predict(Parameters(), [7, 8, 3, 4, 5])
    stream.close()

    stream = model.predict(Parameters(), [3, 4, 5, 6])

    assert stream.history == [3, 4, 5, 6]
    assert not stream.context.stale
    _assert_matches_fresh_decode(backend, stream)
    stream.close()


def test_full_overlap_after_cut_recomputes_last_logits(model, backend):
    stream = model.predict(Parameters(), [7, 8, 3, 4])
    stream.close()

    stream = model.predict(Parameters(), [3, 4])

    assert stream.history == [3, 4]
    _assert_matches_fresh_decode(backend, stream)
    stream.close()


def test_greedy_next_uses_current_logits(model, backend):
    stream = model.predict(Parameters(temperature=0.0, repeat_last_n=0), [3, 4, 5])
    expected = int(torch.argmax(_fresh_logits(backend, [3, 4, 5])))
    if expected == EOS:
        with pytest.raises(EndOfStream):
            stream.next()
    else:
        assert stream.next() == expected
        _assert_matches_fresh_decode(backend, stream)
    stream.close()


def test_decode_past_context_size_reports_no_room(backend):
    ctx = backend.new_context(4, seed=0)
    assert backend.decode(ctx, 0, [1, 2, 3]) == 0
    assert backend.decode(ctx, 3, [4, 5]) == 1
    assert [tok for _, tok in ctx.cells] == [1, 2, 3]
    assert ctx.logits_pos == 2


def test_candidates_follow_logits_position(backend):
    ctx = backend.new_context(16, seed=0)
    backend.decode(ctx, 0, [1, 2, 3])
    assert backend.candidates(ctx, 1) is None
    assert len(backend.candidates(ctx, 2)) == VOCAB

    backend.cache_remove(ctx, 0, 2, -1)
    assert backend.candidates(ctx, 2) is None
    assert ctx.past_key_values.get_seq_length() == 2
