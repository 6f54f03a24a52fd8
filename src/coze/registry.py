"""Model catalog helpers."""
from __future__ import annotations

from .config import ModelSpec


class ModelRegistry:
    def __init__(self, models: list[ModelSpec]):
        keys = [model.key for model in models]
        duplicates = sorted({key for key in keys if keys.count(key) > 1})
        if duplicates:
            raise ValueError(f"Duplicate model keys: {', '.join(duplicates)}")
        self._models = models

    def list(self) -> list[ModelSpec]:
        return list(self._models)

    def get(self, key: str) -> ModelSpec:
        for model in self._models:
            if model.key == key:
                return model
        raise KeyError(f"Model not found: {key}")

    def choices(self) -> list[tuple[str, str]]:
        """(label, key) pairs for a dropdown, with the download size when known."""
        result = []
        for model in self._models:
            label = model.display_name
            if model.size_bytes:
                label = f"{label} ({model.size_bytes / 1e9:.1f} GB)"
            result.append((label, model.key))
        return result
