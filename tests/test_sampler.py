import pytest
import torch

from coze.config import GenerationDefaults
from coze.errors import SamplingError
from coze.generation.sampler import (
    Deterministic,
    Temperature,
    TopK,
    TopP,
    apply_repeat_penalty,
    resolve_mode,
    sample,
)


def _gen(seed: int = 1234) -> torch.Generator:
    return torch.Generator().manual_seed(seed)


def test_deterministic_picks_argmax():
    logits = torch.tensor([0.1, 3.0, -1.0, 2.9])
    assert sample(logits, Deterministic()) == 1


def test_deterministic_needs_no_generator():
    assert sample(torch.tensor([[1.0, 5.0]]), Deterministic()) == 1


def test_temperature_is_reproducible_with_seed():
    logits = torch.tensor([1.0, 1.2, 0.8, 1.1, 0.9])
    mode = Temperature(1.5)
    first_gen, second_gen = _gen(7), _gen(7)
    first = [sample(logits, mode, first_gen) for _ in range(30)]
    second = [sample(logits, mode, second_gen) for _ in range(30)]
    assert first == second
    assert len(set(first)) > 1


def test_stochastic_mode_requires_generator():
    with pytest.raises(SamplingError):
        sample(torch.tensor([1.0, 2.0]), Temperature(1.0))


def test_top_k_one_is_greedy():
    logits = torch.tensor([0.5, 0.2, 4.0, 0.1])
    gen = _gen()
    assert all(sample(logits, TopK(1, 3.0), gen) == 2 for _ in range(20))


def test_top_k_only_samples_best_tokens():
    logits = torch.tensor([5.0, 4.9, -3.0, -4.0, 4.8])
    gen = _gen()
    picks = {sample(logits, TopK(3), gen) for _ in range(200)}
    assert picks <= {0, 1, 4}


def test_top_p_keeps_smallest_nucleus():
    logits = torch.tensor([3.0, 3.0, -5.0])
    gen = _gen()
    picks = {sample(logits, TopP(0.9), gen) for _ in range(200)}
    assert picks == {0, 1}


def test_top_p_dominant_token():
    logits = torch.tensor([0.0, 5.0, 1.0])
    gen = _gen()
    assert all(sample(logits, TopP(0.5), gen) == 1 for _ in range(20))


def test_all_mass_on_eos_still_returns_eos():
    logits = torch.full((4,), float("-inf"))
    logits[0] = 0.0
    gen = _gen()
    for mode in (Deterministic(), Temperature(2.0), TopP(0.9), TopK(3)):
        assert sample(logits, mode, gen) == 0


@pytest.mark.parametrize(
    "logits",
    [
        torch.full((3,), float("-inf")),
        torch.tensor([1.0, float("nan"), 0.0]),
        torch.tensor([]),
    ],
)
def test_degenerate_logits_raise(logits):
    with pytest.raises(SamplingError):
        sample(logits, Temperature(1.0), _gen())


def test_overflowing_temperature_raises_instead_of_nan():
    logits = torch.tensor([1.0, 2.0, 3.0])
    with pytest.raises(SamplingError):
        sample(logits, Temperature(1e-45), _gen())


@pytest.mark.parametrize(
    "factory",
    [
        lambda: Temperature(0.0),
        lambda: Temperature(-1.0),
        lambda: TopP(0.0),
        lambda: TopP(1.5),
        lambda: TopK(0),
        lambda: TopK(3, temperature=0.0),
    ],
)
def test_invalid_mode_parameters(factory):
    with pytest.raises(ValueError):
        factory()


def test_repeat_penalty_damps_recent_tokens():
    logits = torch.tensor([2.0, -2.0, 1.0])
    out = apply_repeat_penalty(logits, 2.0, [0, 1, 1, 99])
    assert out.tolist() == [1.0, -4.0, 1.0]
    # The input tensor is left untouched.
    assert logits.tolist() == [2.0, -2.0, 1.0]


def test_repeat_penalty_of_one_is_noop():
    logits = torch.tensor([2.0, -2.0])
    assert apply_repeat_penalty(logits, 1.0, [0, 1]) is logits


class TestResolveMode:
    def test_careful_preset(self):
        preset = resolve_mode(GenerationDefaults(mode="careful"))
        assert preset.mode == Deterministic()
        assert preset.repeat_penalty == 1.2
        assert preset.repeat_last_n == 64

    def test_deranged_preset(self):
        preset = resolve_mode(GenerationDefaults(mode="deranged"))
        assert preset.mode == TopK(10, 5.0)
        assert preset.repeat_penalty == 2.0
        assert preset.repeat_last_n == 128

    def test_explicit_penalty_overrides_preset(self):
        preset = resolve_mode(GenerationDefaults(mode="creative", repeat_penalty=1.0, repeat_last_n=8))
        assert preset.mode == TopK(5, 2.0)
        assert preset.repeat_penalty == 1.0
        assert preset.repeat_last_n == 8

    def test_parametric_modes(self):
        assert resolve_mode(GenerationDefaults(mode="temperature", temperature=0.7)).mode == Temperature(0.7)
        assert resolve_mode(GenerationDefaults(mode="top_p", top_p=0.8, temperature=1.0)).mode == TopP(0.8, 1.0)

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            resolve_mode(GenerationDefaults(mode="chaotic"))
