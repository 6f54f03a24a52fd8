"""Model files cache.

Resolves a catalog entry to a local directory holding weights and
tokenizer files, downloading from the Hugging Face Hub the first time a
model is requested.
"""
from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Callable

from huggingface_hub import snapshot_download
from huggingface_hub.utils import (
    GatedRepoError,
    HfHubHTTPError,
    LocalEntryNotFoundError,
    RepositoryNotFoundError,
)

from .config import ModelSpec
from .errors import LoadError

logger = logging.getLogger(__name__)

MODELS_PATH = "models"
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_DOWNLOAD_TIMEOUT = 60

ALLOW_PATTERNS = [
    "*.json",
    "*.safetensors",
    "*.model",
    "*.tiktoken",
    "tokenizer*",
    "*.txt",
    "*.py",
]

_TOKENIZER_FILES = ("tokenizer.json", "tokenizer.model", "tokenizer_config.json")

ProgressFn = Callable[[float, str], None]


def _noop_progress(fraction: float, message: str) -> None:
    pass


def ensure_safetensors_index(model_path: str) -> None:
    """Write ``model.safetensors.index.json`` for single-file checkpoints."""
    index_path = Path(model_path) / "model.safetensors.index.json"
    if index_path.exists():
        return
    st_path = Path(model_path) / "model.safetensors"
    if not st_path.exists():
        return
    from safetensors import safe_open

    weight_map: dict[str, str] = {}
    with safe_open(str(st_path), framework="pt") as f:
        for key in f.keys():
            weight_map[key] = st_path.name
    data = {
        "metadata": {"total_size": os.path.getsize(st_path)},
        "weight_map": weight_map,
    }
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle)


def validate_model_dir(model_path: str) -> None:
    path = Path(model_path)
    if not path.is_dir():
        raise LoadError(f"Model path not found: {model_path}")
    if not (path / "config.json").exists():
        raise LoadError(f"Missing config.json in {model_path}")
    if not any(path.glob("*.safetensors")) and not any(path.glob("*.bin")):
        raise LoadError(f"No weight files in {model_path}")
    if not any((path / name).exists() for name in _TOKENIZER_FILES):
        raise LoadError(f"No tokenizer files in {model_path}")


class ModelCache:
    def __init__(
        self,
        cache_dir: str,
        offline: bool = False,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        timeout: int = DEFAULT_DOWNLOAD_TIMEOUT,
    ) -> None:
        self.cache_dir = os.path.expanduser(cache_dir)
        self.offline = offline
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self.timeout = timeout

    def model_dir(self, spec: ModelSpec) -> str:
        if spec.local_path:
            return os.path.expanduser(spec.local_path)
        return os.path.join(self.cache_dir, MODELS_PATH, spec.key)

    def layer_cache_dir(self, spec: ModelSpec) -> str:
        return os.path.join(self.cache_dir, "layers", spec.key)

    def is_cached(self, spec: ModelSpec) -> bool:
        try:
            validate_model_dir(self.model_dir(spec))
        except LoadError:
            return False
        return True

    def ensure(self, spec: ModelSpec, progress: ProgressFn | None = None) -> str:
        """Return a validated local model directory, downloading when needed."""
        progress = progress or _noop_progress
        target = self.model_dir(spec)

        if spec.local_path:
            progress(0.0, f"Using local files for {spec.display_name}")
            validate_model_dir(target)
        elif self.is_cached(spec):
            progress(0.0, f"{spec.display_name} found in cache")
        else:
            if not spec.repo_id:
                raise LoadError(f"Model {spec.key} has neither local_path nor repo_id")
            progress(0.0, f"Downloading {spec.repo_id}")
            self._download(spec, target)
            validate_model_dir(target)

        ensure_safetensors_index(target)
        progress(1.0, "Model files ready")
        return target

    def _download(self, spec: ModelSpec, target: str) -> None:
        os.makedirs(target, exist_ok=True)
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info(
                    "Downloading model %s (%s)... [attempt %d/%d]",
                    spec.key,
                    spec.repo_id,
                    attempt,
                    self.max_retries,
                )
                snapshot_download(
                    repo_id=spec.repo_id,
                    revision=spec.revision,
                    local_dir=target,
                    allow_patterns=ALLOW_PATTERNS,
                    etag_timeout=self.timeout,
                    local_files_only=self.offline,
                )
                logger.info("Model %s downloaded", spec.key)
                return
            except GatedRepoError as exc:
                raise LoadError(
                    f"Model {spec.repo_id} requires authentication, run `huggingface-cli login`"
                ) from exc
            except RepositoryNotFoundError as exc:
                raise LoadError(f"Model not found on the Hub: {spec.repo_id}") from exc
            except LocalEntryNotFoundError as exc:
                raise LoadError(f"Model {spec.key} is not cached and offline mode is on") from exc
            except HfHubHTTPError as exc:
                last_error = exc
                response = getattr(exc, "response", None)
                status_code = getattr(response, "status_code", None) if response is not None else None
                if status_code and 400 <= status_code < 500 and status_code != 429:
                    raise LoadError(f"Client error downloading {spec.repo_id}: {exc}") from exc
                logger.warning(
                    "Network error downloading model %s (attempt %d/%d): %s",
                    spec.key,
                    attempt,
                    self.max_retries,
                    exc,
                )
            except (OSError, TimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "Download of %s failed (attempt %d/%d): %s",
                    spec.key,
                    attempt,
                    self.max_retries,
                    exc,
                )

            if attempt < self.max_retries:
                time.sleep(self.retry_base_delay * (2 ** (attempt - 1)))

        raise LoadError(f"Failed to download {spec.repo_id}: {last_error}")
