"""Interpolation baselines usable wherever a model reference is expected.

Reference as ``models/bicubic.py`` (2x) or ``models/bicubic.py:MODEL_X3``.
"""
import cv2
import numpy as np

from upscaler import ModelDefinition


def interpolation_model(scale: int, interpolation: int = cv2.INTER_CUBIC, name: str = 'bicubic') -> ModelDefinition:
    def predict(pixels: np.ndarray) -> np.ndarray:
        height, width = pixels.shape[:2]
        return cv2.resize(pixels, (width * scale, height * scale), interpolation=interpolation)

    return ModelDefinition(
        scale=scale,
        predict=predict,
        package_information={'name': f'{name}-x{scale}'},
    )


MODEL = interpolation_model(2)
MODEL_X3 = interpolation_model(3)
MODEL_X4 = interpolation_model(4)
MODEL_NEAREST = interpolation_model(2, cv2.INTER_NEAREST, name='nearest')
