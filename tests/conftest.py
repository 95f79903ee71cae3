import importlib.util
import os

import numpy as np
import pytest
from PIL import Image

# load the fixture generator by path; tests/fixtures is not a package
_spec = importlib.util.spec_from_file_location('generate_fixtures', os.path.join(os.path.dirname(__file__), 'fixtures', 'generate_fixtures.py'))
generate_fixtures = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(generate_fixtures)

from upscaler import ModelDefinition  # noqa: E402


def repeat_predict(factor):
    def predict(pixels):
        return np.repeat(np.repeat(pixels, factor, axis=0), factor, axis=1)
    return predict


@pytest.fixture
def cache_dir(tmp_path):
    return str(tmp_path / 'cache')


@pytest.fixture
def source_dir(tmp_path):
    # three images with dimensions that are not multiples of 2, 3 or 4
    return generate_fixtures.create_dataset(str(tmp_path / 'source'))


@pytest.fixture
def even_source_dir(tmp_path):
    out = tmp_path / 'even'
    generate_fixtures.make_noise_png(str(out / 'a.png'), size=(40, 40), seed=1)
    generate_fixtures.make_noise_png(str(out / 'b.png'), size=(60, 20), seed=2)
    return str(out)


@pytest.fixture
def repeat_model():
    return ModelDefinition(scale=2, predict=repeat_predict(2), package_information={'name': 'repeat-x2'})


@pytest.fixture
def temp_image_file(tmp_path):
    img = Image.new('RGB', (100, 80), color=(255, 255, 255))
    p = tmp_path / 'temp.png'
    img.save(str(p))
    return str(p)


@pytest.fixture
def full_source_dir(tmp_path):
    # adds a nested JPEG, a fully transparent PNG and a non-image file
    return generate_fixtures.create_all(str(tmp_path / 'all'))
