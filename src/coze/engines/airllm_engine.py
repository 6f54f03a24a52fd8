"""AirLLM adapter implementation."""
from __future__ import annotations

import logging
import os
from typing import Any, Sequence

import torch
from airllm import AutoModel

from .base import DeviceSpec
from ..errors import EncodingError, InferenceError, LoadError
from ..prompts import build_chat_messages, render_prompt

logger = logging.getLogger(__name__)


def _is_mistral_model(model: Any) -> bool:
    config = getattr(model, "config", None)
    if config is not None and getattr(config, "model_type", None) == "mistral":
        return True
    return "mistral" in model.__class__.__name__.lower()


def _patch_mistral_position_embeddings(model: Any) -> None:
    """Feed rotary embeddings explicitly, newer transformers dropped the implicit path."""
    if not _is_mistral_model(model) or not hasattr(model, "get_pos_emb_args"):
        return
    base_model = getattr(model, "model", None)
    rotary = getattr(base_model, "rotary_emb", None)
    if rotary is None:
        rotary = getattr(getattr(base_model, "model", None), "rotary_emb", None)
    if rotary is None:
        return
    original = model.get_pos_emb_args

    def _get_pos_emb_args(len_p: int, len_s: int):
        if len_s <= 0:
            return original(len_p, len_s)
        try:
            device = getattr(model, "running_device", None) or getattr(model, "device", None) or "cpu"
            dtype = getattr(model, "running_dtype", torch.float16)
            position_ids = torch.arange(len_p, len_p + len_s, device=device, dtype=torch.long).unsqueeze(0)
            cos, sin = rotary(torch.empty((1,), device=device, dtype=dtype), position_ids)
            return {"position_embeddings": (cos, sin)}
        except Exception:
            logger.debug("Falling back to stock position embeddings", exc_info=True)
            return original(len_p, len_s)

    model.get_pos_emb_args = _get_pos_emb_args


class AirLLMAdapter:
    """Layer-by-layer quantized inference through AirLLM.

    AirLLM streams layers from disk and runs without a key/value cache, so
    every step recomputes the (truncated) context.
    """

    def __init__(self, family_hint: str | None = None) -> None:
        self._model: Any | None = None
        self._tokenizer: Any | None = None
        self._device: torch.device | None = None
        self._eos_id: int | None = None
        self._max_context = 4096
        self._family_hint = family_hint

    def load(
        self,
        model_path: str,
        compression: str | None,
        layer_cache_dir: str,
        device: DeviceSpec,
        max_context: int = 4096,
    ) -> None:
        if device.kind == "cuda" and torch.cuda.is_available():
            index = device.gpu_index if device.gpu_index is not None else 0
            self._device = torch.device(f"cuda:{index}")
        else:
            self._device = torch.device("cpu")
        self._max_context = max_context

        if layer_cache_dir:
            os.makedirs(layer_cache_dir, exist_ok=True)

        logger.info("Loading %s (compression=%s) on %s", model_path, compression, self._device)
        try:
            self._model = AutoModel.from_pretrained(
                model_path,
                layer_shards_saving_path=layer_cache_dir,
                compression=compression,
            )
        except Exception as exc:
            self.unload()
            raise LoadError(f"Unable to load model from {model_path}: {exc}") from exc
        _patch_mistral_position_embeddings(self._model)

        self._tokenizer = getattr(self._model, "tokenizer", None)
        if self._tokenizer is None:
            self.unload()
            raise LoadError("Model tokenizer not available")
        self._eos_id = getattr(self._tokenizer, "eos_token_id", None)
        if self._eos_id is None:
            self.unload()
            raise LoadError("Tokenizer defines no end-of-sequence token")

    def unload(self) -> None:
        self._model = None
        self._tokenizer = None
        self._device = None
        self._eos_id = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def _require_loaded(self) -> None:
        if self._model is None or self._tokenizer is None or self._device is None:
            raise InferenceError("Model not loaded")

    def format_prompt(self, prompt: str, turns: Sequence[tuple[str, str]]) -> str:
        self._require_loaded()
        messages = build_chat_messages(turns, prompt, self._family_hint)
        try:
            return render_prompt(self._tokenizer, messages, self._family_hint)
        except Exception as exc:
            raise EncodingError(f"Unable to apply chat template: {exc}") from exc

    def encode(self, text: str) -> list[int]:
        self._require_loaded()
        if not isinstance(text, str):
            raise EncodingError(f"Expected text, got {type(text).__name__}")
        try:
            return list(self._tokenizer(text)["input_ids"])
        except Exception as exc:
            raise EncodingError(f"Unable to tokenize prompt: {exc}") from exc

    def decode(self, token_ids: Sequence[int]) -> str:
        self._require_loaded()
        try:
            return self._tokenizer.decode(list(token_ids), skip_special_tokens=True)
        except Exception as exc:
            raise EncodingError(f"Cannot decode: {exc}") from exc

    def forward_step(self, tokens: Sequence[int], start_pos: int) -> torch.Tensor:
        self._require_loaded()
        context = list(tokens)[-self._max_context:]
        input_ids = torch.tensor([context], dtype=torch.long, device=self._device)
        try:
            with torch.inference_mode():
                output = self._model(input_ids=input_ids, use_cache=False, return_dict=True)
        except Exception as exc:
            raise InferenceError(f"Forward pass failed: {exc}") from exc

        logits = output.logits if hasattr(output, "logits") else output[0]
        if logits.ndim == 3:
            logits = logits[0, -1, :]
        elif logits.ndim == 2:
            logits = logits[-1, :]
        return logits.float().cpu()

    def end_of_sequence_id(self) -> int:
        self._require_loaded()
        return int(self._eos_id)

    def reset(self) -> None:
        # No key/value cache is kept between steps.
        return None
