"""Dataset preparation and the JSON-backed cache of derived images.

For every source image a dataset stores, per scale, an ``original`` cropped
to a multiple of the scale and a ``downscaled`` copy at exactly 1/scale of
that size, plus optional centred square crops of both. The mapping is kept
in ``<cache_dir>/<dataset name>/database.json`` and rewritten after every
derivation, so an interrupted run only loses the file in flight.
"""
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import json
import logging
import os
import threading

from PIL import Image, UnidentifiedImageError

from errors import (
    CacheCorruptionError,
    DatasetConfigurationError,
    DatasetError,
    MissingCropError,
    MissingScaleError,
)
from pool import bounded_map, consume

logger = logging.getLogger(__name__)

ROOT_DIR = os.path.abspath(os.path.dirname(__file__))
DEFAULT_CACHE_DIR = os.environ.get('UPSCALE_BENCHMARK_CACHE_DIR', os.path.join(ROOT_DIR, 'tmp', 'datasets'))
DATABASE_FILE = 'database.json'
IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png'}
PREPARE_CONCURRENCY = 20
WHITE = (255, 255, 255)


@dataclass(frozen=True)
class DatasetDefinition:
    name: str
    path: Optional[str] = None


@dataclass(frozen=True)
class ImagePackage:
    path: str
    width: int
    height: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImagePackage':
        return cls(path=data['path'], width=data['width'], height=data['height'])


@dataclass(frozen=True)
class CroppedPair:
    original: ImagePackage
    downscaled: ImagePackage


@dataclass(frozen=True)
class ProcessedFileDefinition:
    original: ImagePackage
    downscaled: ImagePackage
    file_name: str
    cropped: Dict[str, CroppedPair] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'original': asdict(self.original),
            'downscaled': asdict(self.downscaled),
            'cropped': {size: asdict(pair) for size, pair in self.cropped.items()},
            'fileName': self.file_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProcessedFileDefinition':
        cropped = {
            size: CroppedPair(original=ImagePackage.from_dict(pair['original']), downscaled=ImagePackage.from_dict(pair['downscaled']))
            for size, pair in data.get('cropped', {}).items()
        }
        return cls(
            original=ImagePackage.from_dict(data['original']),
            downscaled=ImagePackage.from_dict(data['downscaled']),
            file_name=data['fileName'],
            cropped=cropped,
        )


@dataclass(frozen=True)
class PreparedFile:
    original: ImagePackage
    downscaled: ImagePackage
    file_name: str


# Image helpers

def find_image_files(directory: str) -> List[str]:
    """Return image paths under ``directory``, relative and POSIX-separated."""
    files = []
    for root, dirs, names in os.walk(directory):
        dirs.sort()
        for name in names:
            if os.path.splitext(name)[1].lower() in IMAGE_EXTENSIONS:
                rel = os.path.relpath(os.path.join(root, name), directory)
                files.append(rel.replace(os.sep, '/'))
    return sorted(files)


def load_flattened(path: str) -> Image.Image:
    """Open an image and composite any transparency onto white.

    Raises:
        DatasetError: when the file cannot be decoded as an image.
    """
    try:
        im = Image.open(path)
    except UnidentifiedImageError as e:
        raise DatasetError(f'Cannot read image {path}: {e}') from e
    with im:
        try:
            im.load()
        except OSError as e:
            raise DatasetError(f'Cannot read image {path}: {e}') from e
        if im.mode in ('RGBA', 'LA') or (im.mode == 'P' and 'transparency' in im.info):
            rgba = im.convert('RGBA')
            background = Image.new('RGB', rgba.size, WHITE)
            background.paste(rgba, mask=rgba.split()[-1])
            return background
        return im.convert('RGB')


def resize_image(image: Image.Image, width: int, height: int, cover: bool = False) -> Image.Image:
    """Resize to exactly (width, height).

    With ``cover`` the aspect ratio is kept and the overflow is cropped
    around the centre instead of stretching.
    """
    if cover:
        return _cover(image, width, height)
    return image.resize((width, height), Image.LANCZOS)


def _cover(image: Image.Image, width: int, height: int) -> Image.Image:
    src_w, src_h = image.size
    ratio = max(width / src_w, height / src_h)
    scaled_w = max(width, round(src_w * ratio))
    scaled_h = max(height, round(src_h * ratio))
    scaled = image.resize((scaled_w, scaled_h), Image.LANCZOS)
    left = (scaled_w - width) // 2
    top = (scaled_h - height) // 2
    return scaled.crop((left, top, left + width, top + height))


def crop_center(image: Image.Image, size: int) -> Image.Image:
    width, height = image.size
    if size > width or size > height:
        raise DatasetError(f'Crop size {size} is larger than the image ({width}x{height})')
    left = (width - size) // 2
    top = (height - size) // 2
    return image.crop((left, top, left + size, top + size))


def floor_to_multiple(value: int, scale: int) -> int:
    return (value // scale) * scale


def derive_original(source: Image.Image, scale: int) -> Image.Image:
    width, height = source.size
    target_w, target_h = floor_to_multiple(width, scale), floor_to_multiple(height, scale)
    if target_w == 0 or target_h == 0:
        raise DatasetError(f'Image of {width}x{height} is smaller than scale {scale}')
    return resize_image(source, target_w, target_h, cover=True)


def derive_downscaled(original: Image.Image, scale: int) -> Image.Image:
    width, height = original.size
    if width % scale or height % scale:
        raise DatasetError(f'Image of {width}x{height} is not divisible by scale {scale}')
    return resize_image(original, width // scale, height // scale)


# Database validation

def _check(condition: bool, filename: str, detail: str) -> None:
    if not condition:
        raise CacheCorruptionError(f'Dataset cache {filename} is corrupt: {detail}')


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_package(data, filename: str, where: str) -> None:
    _check(isinstance(data, dict), filename, f'{where} is not an object')
    _check(isinstance(data.get('path'), str), filename, f'{where}.path is not a string')
    _check(_is_int(data.get('width')) and _is_int(data.get('height')), filename, f'{where} has non-integer dimensions')


def validate_database(data: Any, filename: str = DATABASE_FILE) -> Dict[str, Dict[str, Any]]:
    """Check the shape of a loaded database and return it unchanged."""
    _check(isinstance(data, dict), filename, 'top level is not an object')
    for file_name, scales in data.items():
        _check(isinstance(scales, dict), filename, f'entry {file_name!r} is not an object')
        for scale, entry in scales.items():
            where = f'{file_name}[{scale}]'
            _check(scale.isdigit(), filename, f'{where} scale is not an integer')
            _check(isinstance(entry, dict), filename, f'{where} is not an object')
            _validate_package(entry.get('original'), filename, f'{where}.original')
            _validate_package(entry.get('downscaled'), filename, f'{where}.downscaled')
            _check(isinstance(entry.get('fileName'), str), filename, f'{where}.fileName is not a string')
            cropped = entry.get('cropped', {})
            _check(isinstance(cropped, dict), filename, f'{where}.cropped is not an object')
            for size, pair in cropped.items():
                _check(size.isdigit(), filename, f'{where}.cropped key {size!r} is not an integer')
                _check(isinstance(pair, dict), filename, f'{where}.cropped[{size}] is not an object')
                _validate_package(pair.get('original'), filename, f'{where}.cropped[{size}].original')
                _validate_package(pair.get('downscaled'), filename, f'{where}.cropped[{size}].downscaled')
    return data


class Dataset:
    """A named image collection and its cache of derived benchmark images."""

    def __init__(self, definition: DatasetDefinition, cache_dir: Optional[str] = None):
        self.definition = definition
        self.cache_dir = cache_dir or DEFAULT_CACHE_DIR
        self._lock = threading.RLock()
        self._source_files: Optional[Set[str]] = None
        self.database = self.get_dataset_database()

    @property
    def name(self) -> str:
        return self.definition.name

    def get_writable_name(self, name: str) -> str:
        if not name:
            raise ValueError('No name provided')
        return os.path.join(self.cache_dir, self.definition.name, name.replace('/', '-'))

    @property
    def database_path(self) -> str:
        return self.get_writable_name(DATABASE_FILE)

    def get_dataset_database(self) -> Dict[str, Dict[str, Any]]:
        filename = self.database_path
        if not os.path.exists(filename):
            return {}
        with open(filename, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise CacheCorruptionError(f'Dataset cache {filename} is not valid JSON: {e}') from e
        return validate_database(data, filename)

    def save_database(self, key: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> None:
        """Merge ``payload`` into the entry for ``key`` and rewrite the database file."""
        with self._lock:
            if key is not None:
                self.database[key] = {**self.database.get(key, {}), **(payload or {})}
            filename = self.database_path
            os.makedirs(os.path.dirname(filename), exist_ok=True)
            tmp = filename + '.tmp'
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(self.database, f, sort_keys=True)
            os.replace(tmp, filename)

    def save_image(self, name: str, image: Image.Image) -> str:
        path = self.get_writable_name(name) + '.png'
        os.makedirs(os.path.dirname(path), exist_ok=True)
        image.save(path, format='PNG')
        return path

    def _entry(self, file_name: str, scale: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.database.get(file_name, {}).get(str(scale))

    def is_processed(self, file_name: str, scale: int, cropped: Optional[int] = None) -> bool:
        entry = self._entry(file_name, scale)
        if entry is None:
            return False
        if cropped is None:
            return True
        return str(cropped) in entry.get('cropped', {})

    def initialize(self, scale: int, cropped: Optional[int] = None, progress: Optional[Callable[[], None]] = None) -> None:
        """Derive and cache every source image at ``scale`` (and ``cropped``).

        Files already cached for this scale and crop are skipped. ``progress``
        is called once per source file, in completion order.
        """
        if not _is_int(scale) or scale < 1:
            raise DatasetConfigurationError(f'Scale must be a positive integer, got {scale!r}')
        if cropped is not None:
            if not _is_int(cropped) or cropped < 1:
                raise DatasetConfigurationError(f'Crop size must be a positive integer, got {cropped!r}')
            if cropped % scale:
                raise DatasetConfigurationError(f'Crop size {cropped} is not divisible by scale {scale}')

        source_path = self.definition.path
        if not source_path:
            if self.database and all(self.is_processed(name, scale, cropped) for name in list(self.database)):
                logger.info('Dataset %s has no source path; using its cache', self.name)
                return
            raise DatasetConfigurationError(
                f"The dataset {self.name} has not been fully processed, and no path to the dataset was given. "
                'Please pass a valid path so that the dataset can be processed and cached.'
            )
        if not os.path.isdir(source_path):
            raise DatasetConfigurationError(f'Dataset path {source_path} for {self.name} is not a directory')

        files = [(name, os.path.join(source_path, name)) for name in find_image_files(source_path)]
        self._source_files = {name for name, _ in files}
        logger.info('Preparing %d files of dataset %s at scale %d', len(files), self.name, scale)
        self.prepare(files, scale, progress or (lambda: None), cropped)
        self.save_database()

    def prepare(self, files: List[Tuple[str, str]], scale: int, callback: Callable[[], None], cropped: Optional[int] = None) -> None:
        def _process(item: Tuple[str, str]) -> None:
            file_name, file_path = item
            self._process_file(file_name, file_path, scale, cropped)

        consume(bounded_map(PREPARE_CONCURRENCY, files, _process), callback)

    def _process_original(self, file_name: str, file_path: str, scale: int) -> None:
        if self.is_processed(file_name, scale):
            return
        original = derive_original(load_flattened(file_path), scale)
        original_path = self.save_image(f'{file_name}-scale-{scale}-original', original)
        downscaled = derive_downscaled(original, scale)
        downscaled_path = self.save_image(f'{file_name}-scale-{scale}-downscaled', downscaled)

        definition = ProcessedFileDefinition(
            original=ImagePackage(original_path, *original.size),
            downscaled=ImagePackage(downscaled_path, *downscaled.size),
            file_name=file_name,
        )
        self.save_database(file_name, {str(scale): definition.to_dict()})
        logger.debug('Derived %s at scale %d', file_name, scale)

    def _process_cropped(self, file_name: str, scale: int, cropped: int) -> None:
        entry = self._entry(file_name, scale)
        with Image.open(entry['original']['path']) as im:
            original = crop_center(im.convert('RGB'), cropped)
        original_path = self.save_image(f'{file_name}-scale-{scale}-cropped-{cropped}-original', original)
        downscaled = derive_downscaled(original, scale)
        downscaled_path = self.save_image(f'{file_name}-scale-{scale}-cropped-{cropped}-downscaled', downscaled)

        pair = CroppedPair(ImagePackage(original_path, *original.size), ImagePackage(downscaled_path, *downscaled.size))
        with self._lock:
            entry = self._entry(file_name, scale)
            updated = {**entry, 'cropped': {**entry.get('cropped', {}), str(cropped): asdict(pair)}}
            self.save_database(file_name, {str(scale): updated})

    def _process_file(self, file_name: str, file_path: str, scale: int, cropped: Optional[int]) -> None:
        if self.is_processed(file_name, scale, cropped):
            return
        self._process_original(file_name, file_path, scale)
        if cropped is not None and not self.is_processed(file_name, scale, cropped):
            self._process_cropped(file_name, scale, cropped)

    def get_files(self, scale: int, cropped: Optional[int] = None) -> List[PreparedFile]:
        """Return the prepared (original, downscaled) pairs sorted by file name.

        After ``initialize`` has walked a source directory, only files still
        present there are listed; cache entries for removed files are kept
        on disk but ignored.
        """
        prepared = []
        with self._lock:
            names = sorted(name for name in self.database if self._source_files is None or name in self._source_files)
            entries = [(name, self.database[name].get(str(scale))) for name in names]
        for file_name, entry in entries:
            if entry is None:
                raise MissingScaleError(
                    f'{file_name} in dataset {self.name} has not been processed at scale {scale}; '
                    'initialize the dataset with its source path, or delete the stale entry from database.json'
                )
            definition = ProcessedFileDefinition.from_dict(entry)
            if cropped is not None:
                pair = definition.cropped.get(str(cropped))
                if pair is None:
                    raise MissingCropError(f'No cropping exists for {cropped} in {file_name} of dataset {self.name}')
                prepared.append(PreparedFile(pair.original, pair.downscaled, definition.file_name))
            else:
                prepared.append(PreparedFile(definition.original, definition.downscaled, definition.file_name))
        return prepared
