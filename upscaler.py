"""Wrap an upscaling model and run it over images patch by patch.

A model is described by a :class:`ModelDefinition`: its output scale, a
``predict`` callable mapping an (H, W, 3) float32 array in 0..255 to an
(H*scale, W*scale, 3) array, and optional package information used for
reporting. Models are referenced by a ``.py`` file path or an importable
``module[:attribute]`` name.
"""
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Union
import importlib
import importlib.util
import logging
import os

import cv2
import numpy as np
from PIL import Image

from errors import ModelNotReadyError, UpscaleError
from utils import validate_image_array

logger = logging.getLogger(__name__)

PATCH_SIZE = 64
PADDING = 2
DEFAULT_ATTRIBUTE = 'MODEL'


@dataclass
class ModelDefinition:
    scale: int
    predict: Callable[[np.ndarray], np.ndarray]
    package_information: Optional[Dict[str, Any]] = None
    path: Optional[str] = None

    @property
    def name(self) -> str:
        info = self.package_information or {}
        return info.get('name') or self.path or 'unknown'


def _coerce_definition(value: Any, ref: str) -> ModelDefinition:
    if callable(value) and not isinstance(value, (ModelDefinition, dict)):
        value = value()
    if isinstance(value, dict):
        try:
            value = ModelDefinition(**value)
        except TypeError as e:
            raise UpscaleError(f'Model {ref} has an invalid definition: {e}') from e
    if not isinstance(value, ModelDefinition):
        raise UpscaleError(f'Model {ref} did not provide a ModelDefinition, got {type(value).__name__}')
    if not isinstance(value.scale, int) or value.scale < 1:
        raise UpscaleError(f'Model {ref} declares an invalid scale {value.scale!r}')
    if not callable(value.predict):
        raise UpscaleError(f'Model {ref} has no callable predict')
    if value.path is None:
        return replace(value, path=ref)
    return value


def resolve_model_definition(ref: Union[str, ModelDefinition]) -> ModelDefinition:
    """Load the model definition that ``ref`` points at."""
    if isinstance(ref, ModelDefinition):
        return _coerce_definition(ref, ref.path or 'model')

    target, _, attribute = ref.partition(':')
    attribute = attribute or DEFAULT_ATTRIBUTE
    if target.endswith('.py'):
        if not os.path.exists(target):
            raise UpscaleError(f'Model file {target} does not exist')
        module_name = os.path.splitext(os.path.basename(target))[0]
        spec = importlib.util.spec_from_file_location(module_name, target)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    else:
        try:
            module = importlib.import_module(target)
        except ImportError as e:
            raise UpscaleError(f'Could not import model {target}: {e}') from e

    if not hasattr(module, attribute):
        raise UpscaleError(f'Model {ref} has no attribute {attribute}')
    return _coerce_definition(getattr(module, attribute), ref)


def _tile_starts(length: int, patch_size: int):
    return range(0, length, patch_size)


def upscale_patched(predict: Callable[[np.ndarray], np.ndarray], pixels: np.ndarray, patch_size: int = PATCH_SIZE, padding: int = PADDING) -> np.ndarray:
    """Run ``predict`` over padded tiles of ``pixels`` and stitch the outputs.

    The output factor is measured on the first tile rather than trusted from
    the model's declared scale, so a model that upscales by the wrong factor
    still produces an image (of the wrong size).
    """
    if pixels.ndim != 3 or 0 in pixels.shape:
        raise UpscaleError(f'Expected a non-empty (H, W, C) image, got shape {pixels.shape}')
    if patch_size < 1 or padding < 0:
        raise UpscaleError(f'Invalid patch size {patch_size} or padding {padding}')

    height, width, channels = pixels.shape
    factor = None
    output = None
    for y0 in _tile_starts(height, patch_size):
        for x0 in _tile_starts(width, patch_size):
            ph = min(patch_size, height - y0)
            pw = min(patch_size, width - x0)
            py0, px0 = max(0, y0 - padding), max(0, x0 - padding)
            py1, px1 = min(height, y0 + ph + padding), min(width, x0 + pw + padding)

            result = np.asarray(predict(pixels[py0:py1, px0:px1]))
            in_h, in_w = py1 - py0, px1 - px0
            if result.ndim != 3 or result.shape[0] % in_h or result.shape[1] % in_w:
                raise UpscaleError(f'Model output shape {result.shape} is not a whole multiple of input {(in_h, in_w)}')
            tile_factor = result.shape[0] // in_h
            if tile_factor != result.shape[1] // in_w:
                raise UpscaleError(f'Model output shape {result.shape} scales height and width differently')
            if factor is None:
                factor = tile_factor
                output = np.zeros((height * factor, width * factor, result.shape[2]), dtype=np.float32)
            elif tile_factor != factor:
                raise UpscaleError(f'Model output factor changed from {factor} to {tile_factor} between patches')

            oy, ox = (y0 - py0) * factor, (x0 - px0) * factor
            output[y0 * factor:(y0 + ph) * factor, x0 * factor:(x0 + pw) * factor] = \
                result[oy:oy + ph * factor, ox:ox + pw * factor]
    return output


def load_image(path: str) -> np.ndarray:
    with Image.open(path) as im:
        return np.asarray(im.convert('RGB'), dtype=np.float32)


def encode_png(pixels: np.ndarray) -> bytes:
    rgb = np.clip(np.rint(pixels), 0, 255).astype(np.uint8)
    ok, buf = cv2.imencode('.png', cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))
    if not ok:
        raise UpscaleError('Could not encode upscaled image as PNG')
    return buf.tobytes()


class Upscaler:
    """Load a model in the background and upscale images with it."""

    def __init__(self, model: Union[str, ModelDefinition], executor: Optional[ThreadPoolExecutor] = None, patch_size: int = PATCH_SIZE, padding: int = PADDING):
        self.model_ref = model
        self.patch_size = patch_size
        self.padding = padding
        if executor is None:
            self._model: Future = Future()
            try:
                self._model.set_result(resolve_model_definition(model))
            except Exception as e:
                self._model.set_exception(e)
        else:
            self._model = executor.submit(resolve_model_definition, model)

    @property
    def ready(self) -> bool:
        return self._model.done() and self._model.exception() is None

    def get_model(self, timeout: Optional[float] = None) -> ModelDefinition:
        """Wait for the model to load; re-raises any load failure."""
        return self._model.result(timeout=timeout)

    def upscale(self, pixels: np.ndarray) -> np.ndarray:
        if not self._model.done():
            raise ModelNotReadyError(f'Model {self.model_ref} is still loading')
        model = self._model.result()
        try:
            validate_image_array(pixels)
        except (TypeError, ValueError) as e:
            raise UpscaleError(f'Cannot upscale image: {e}') from e
        return upscale_patched(model.predict, pixels, self.patch_size, self.padding)

    def upscale_file(self, path: str) -> bytes:
        """Upscale the image at ``path`` and return it as PNG bytes."""
        return encode_png(self.upscale(load_image(path)))
