import pytest

from coze.config import DEFAULT_MODELS, ModelSpec
from coze.registry import ModelRegistry


def test_lookup_and_choices():
    registry = ModelRegistry(DEFAULT_MODELS)
    assert registry.get("mistral-7b-instruct-v0.2").family_hint == "mistral"
    labels = dict(registry.choices())
    assert labels["StableLM 2 Zephyr 1.6B (1.0 GB)"] == "stablelm-2-zephyr-1_6b"


def test_unknown_key():
    with pytest.raises(KeyError):
        ModelRegistry([]).get("missing")


def test_duplicate_keys_rejected():
    with pytest.raises(ValueError):
        ModelRegistry([ModelSpec("a", "A"), ModelSpec("a", "B")])


def test_label_without_size():
    assert ModelRegistry([ModelSpec("a", "Model A")]).choices() == [("Model A", "a")]
