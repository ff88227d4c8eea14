"""
Model lifecycle management for the segmentation network.

The manager:
 - validates the model file (existence, size sanity),
 - builds a CPU-only inference session (ONNX Runtime, or TorchScript for
   non-ONNX checkpoints),
 - keeps at most one live handle per process,
 - guards the handle with a reader/writer lock so a reload never disposes a
   session that an inference call is still using.

Load failures are normal: they are logged, the manager reports itself as
unavailable and callers fall back to the heuristic segmenter.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from pathlib import Path
import threading
from typing import Any, Callable, Iterator, Optional, Tuple, Union

import numpy as np

from .errors import InferenceError, ModelUnavailableError, RuntimeUnsupportedError

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class OnnxRunner:
    runtime = "onnx"

    def __init__(self, session: Any):
        self._session = session
        inputs = session.get_inputs()
        if not inputs:
            raise InferenceError("ONNX model declares no inputs")
        self.input_name = inputs[0].name
        self.input_shape = list(inputs[0].shape or [])
        self.output_count = len(session.get_outputs())

    def run(self, tensor: np.ndarray) -> np.ndarray:
        if self._session is None:
            raise InferenceError("Session already disposed")
        outputs = self._session.run(None, {self.input_name: tensor})
        return np.asarray(outputs[0])

    def close(self) -> None:
        self._session = None


class TorchScriptRunner:
    runtime = "torchscript"

    def __init__(self, module: Any, torch_mod: Any):
        self._module = module
        self._torch = torch_mod

    def run(self, tensor: np.ndarray) -> np.ndarray:
        if self._module is None:
            raise InferenceError("Session already disposed")
        torch = self._torch
        with torch.no_grad():
            out = self._module(torch.from_numpy(tensor))
        out = _first_tensor(out, torch)
        return out.detach().to("cpu").float().numpy()

    def close(self) -> None:
        self._module = None


def _first_tensor(y: Any, torch: Any) -> Any:
    """
    Segmentation networks may return a tensor, a tuple of side outputs
    (the fused prediction comes first) or a dict keyed by output name.
    """
    if isinstance(y, torch.Tensor):
        return y
    if isinstance(y, (list, tuple)):
        for item in y:
            if isinstance(item, torch.Tensor):
                return item
    if isinstance(y, dict):
        for k in ("logits", "pred", "mask", "out"):
            v = y.get(k)
            if isinstance(v, torch.Tensor):
                return v
        for v in y.values():
            if isinstance(v, torch.Tensor):
                return v
    raise InferenceError(f"Model output is not a tensor: {type(y)}")


@dataclass
class ModelHandle:
    session: Any
    path: Path
    runtime: str
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def run(self, tensor: np.ndarray) -> np.ndarray:
        return self.session.run(tensor)

    def close(self) -> None:
        close = getattr(self.session, "close", None)
        if close is not None:
            close()
        self.session = None


def _load_onnx(model_path: Path) -> ModelHandle:
    try:
        import onnxruntime as ort
    except ImportError as exc:
        raise RuntimeUnsupportedError("onnxruntime is not installed or has no native build for this platform") from exc

    options = ort.SessionOptions()
    options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC
    options.log_severity_level = 2  # warning

    session = ort.InferenceSession(str(model_path), sess_options=options, providers=["CPUExecutionProvider"])
    runner = OnnxRunner(session)
    logger.info(
        "ONNX model loaded: input=%s shape=%s outputs=%d",
        runner.input_name,
        runner.input_shape,
        runner.output_count,
    )
    return ModelHandle(session=runner, path=model_path, runtime=runner.runtime)


def _load_torchscript(model_path: Path) -> ModelHandle:
    try:
        import torch
    except ImportError as exc:
        raise RuntimeUnsupportedError("torch is not installed or has no native build for this platform") from exc

    module = torch.jit.load(str(model_path), map_location="cpu")
    if hasattr(module, "eval"):
        module.eval()
    runner = TorchScriptRunner(module, torch)
    logger.info("TorchScript model loaded from %s", model_path)
    return ModelHandle(session=runner, path=model_path, runtime=runner.runtime)


def load_model_handle(model_path: Path) -> ModelHandle:
    """Build a CPU inference handle; ONNX by extension, TorchScript otherwise."""
    if not model_path.is_file():
        raise ModelUnavailableError(f"Model not found at {model_path}")
    if model_path.suffix.lower() == ".onnx":
        return _load_onnx(model_path)
    return _load_torchscript(model_path)


Loader = Callable[[Path], ModelHandle]


class ModelManager:
    """Owns the single process-wide inference handle."""

    def __init__(self, loader: Loader = load_model_handle, min_size_mb: float = 10.0):
        self._loader = loader
        self._min_size_mb = min_size_mb
        self._handle: Optional[ModelHandle] = None
        self._lock = ReadWriteLock()
        self._init_lock = threading.Lock()
        self._failed_attempt: Optional[Tuple[Path, float]] = None
        self._loaded_mtime: Optional[float] = None

    def is_available(self) -> bool:
        return self._handle is not None

    def current_handle(self) -> Optional[ModelHandle]:
        return self._handle

    @contextmanager
    def read_handle(self) -> Iterator[Optional[ModelHandle]]:
        """Yield the live handle (or None) while holding the read lock."""
        with self._lock.read_locked():
            yield self._handle

    def initialize(self, model_path: Union[str, Path]) -> bool:
        """
        Load a model and swap it in. Returns False instead of raising on any
        failure; the previous handle is retired either way.
        """
        with self._init_lock:
            return self._load(Path(model_path))

    def ensure_initialized(self, model_path: Union[str, Path, None]) -> bool:
        """
        Keep the live handle in step with the model file on disk.

        Loads on first use, reloads when the file's mtime changes and retires
        the handle when the file it came from is deleted. A path that already
        failed is only retried once the file changes. Concurrent callers are
        serialized, so the file is loaded at most once per change.
        """
        if model_path is None:
            return self.is_available()
        path = Path(model_path)
        with self._init_lock:
            handle = self._handle
            if not path.is_file():
                if handle is not None and handle.path == path:
                    logger.warning("Model file %s was removed; AI segmentation disabled", path)
                    self._loaded_mtime = None
                    self._retire(self._swap(None))
                return self._handle is not None

            mtime = path.stat().st_mtime
            if handle is not None and (handle.path != path or self._loaded_mtime == mtime):
                return True
            failed = self._failed_attempt
            if failed is not None and failed[0] == path and failed[1] == mtime:
                return False
            if handle is not None:
                logger.info("Model file %s changed on disk; reloading", path)
            else:
                logger.info("Model file found but not loaded; initializing from %s", path)
            return self._load(path)

    def _load(self, path: Path) -> bool:
        # Caller holds _init_lock.
        if not path.is_file():
            logger.warning("Segmentation model not found at %s; AI segmentation disabled", path)
            self._failed_attempt = None
            self._loaded_mtime = None
            self._retire(self._swap(None))
            return False

        stat = path.stat()
        size_mb = stat.st_size / MB
        logger.info("Model file size: %.2f MB (%s)", size_mb, path)
        if size_mb < self._min_size_mb:
            logger.warning(
                "Model file seems too small (%.2f MB, expected at least %.0f MB); file may be incomplete. "
                "Attempting to load anyway.",
                size_mb,
                self._min_size_mb,
            )

        handle: Optional[ModelHandle] = None
        try:
            handle = self._loader(path)
        except RuntimeUnsupportedError as exc:
            logger.error("Inference runtime unsupported on this platform; AI segmentation disabled: %s", exc)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to load segmentation model from %s: %s", path, exc)

        if handle is None:
            self._failed_attempt = (path, stat.st_mtime)
            self._loaded_mtime = None
            self._retire(self._swap(None))
            return False

        self._failed_attempt = None
        self._loaded_mtime = stat.st_mtime
        self._retire(self._swap(handle))
        logger.info("Segmentation model ready: runtime=%s path=%s", handle.runtime, path)
        return True

    def close(self) -> None:
        with self._init_lock:
            self._loaded_mtime = None
            self._retire(self._swap(None))

    def _swap(self, handle: Optional[ModelHandle]) -> Optional[ModelHandle]:
        with self._lock.write_locked():
            old, self._handle = self._handle, handle
        return old

    @staticmethod
    def _retire(old: Optional[ModelHandle]) -> None:
        if old is None:
            return
        try:
            old.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error disposing model handle for %s: %s", old.path, exc)
        logger.info("Disposed model handle loaded at %s from %s", old.loaded_at.isoformat(), old.path)
