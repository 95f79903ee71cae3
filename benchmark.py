"""Benchmark upscaling models against reference datasets.

For every (dataset, model) pair the dataset is prepared at the model's
scale, each downscaled image is upscaled and compared with its original via
ImageMagick, and the mean SSIM and PSNR are reported. This module also holds
report generation and the command-line entry point.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
import argparse
import csv
import json
import logging
import math
import os
import platform
import re
import shutil
import sys
import tempfile
import time

import psutil
from tqdm import tqdm

from dataset import Dataset, DatasetDefinition, PreparedFile
from errors import BenchmarkError, ConfigurationError, DimensionMismatchError
from metrics import calculate_performance, check_imagemagick_installation
from pool import bounded_map
from upscaler import ModelDefinition, Upscaler
from utils import format_score, format_time, get_size

logger = logging.getLogger(__name__)

DEFAULT_MODEL = os.environ.get('UPSCALE_BENCHMARK_MODEL', 'models.bicubic')
BENCHMARK_CONCURRENCY = 1

ModelRef = Union[str, ModelDefinition]
MetricFunction = Callable[[str, str, str, str], float]
PairKey = Tuple[str, str]


@dataclass
class BenchmarkResult:
    dataset_name: str
    model_name: str
    scale: int
    file_count: int
    ssim: float
    psnr: float
    package_name: Optional[str] = None
    elapsed_seconds: Optional[float] = None


def _average(values: Sequence[float]) -> float:
    if not values:
        return float('nan')
    return sum(values) / len(values)


def _safe_component(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]+', '-', name).strip('-') or 'model'


def _model_key(ref: ModelRef) -> str:
    if isinstance(ref, ModelDefinition):
        return ref.name
    return ref


def load_upscaler(ref: ModelRef, executor: Optional[ThreadPoolExecutor] = None) -> Upscaler:
    return Upscaler(ref, executor=executor)


class Benchmarker:
    """Run every model against every dataset and collect mean scores.

    Models start loading when the benchmarker is created; a model that fails
    to load aborts :meth:`benchmark` when it is first awaited. Datasets are
    indexed by name, so a repeated name keeps the last dataset given.
    """

    def __init__(self, models: Iterable[ModelRef], datasets: Iterable[Dataset], n: Optional[int] = None, cropped: Optional[int] = None, work_dir: Optional[str] = None, model_loader: Callable[..., Upscaler] = load_upscaler, metric: MetricFunction = calculate_performance, show_progress: bool = False):
        if n is not None and n < 0:
            raise ConfigurationError(f'n must be non-negative, got {n}')
        self.n = n
        self.cropped = cropped
        self.metric = metric
        self.show_progress = show_progress
        self.results: Dict[PairKey, BenchmarkResult] = {}

        if work_dir is None:
            self.work_dir = tempfile.mkdtemp(prefix='upscale_benchmark_')
        else:
            os.makedirs(work_dir, exist_ok=True)
            self.work_dir = work_dir

        models = list(models)
        self._executor = ThreadPoolExecutor(max_workers=max(1, len(models)), thread_name_prefix='model-loader')
        self.models: Dict[str, Upscaler] = {}
        for ref in models:
            self.models[_model_key(ref)] = model_loader(ref, self._executor)
        self.datasets: Dict[str, Dataset] = {}
        for dataset in datasets:
            self.datasets[dataset.name] = dataset

    def __enter__(self) -> 'Benchmarker':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Remove the working directory with all upscaled and diff images."""
        self._executor.shutdown(wait=True)
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def _progress(self, total: Optional[int], desc: str):
        return tqdm(total=total, desc=desc, leave=False, disable=not self.show_progress)

    def _pair_dir(self, kind: str, dataset: Dataset, model_name: str) -> str:
        return os.path.join(self.work_dir, kind, _safe_component(model_name), _safe_component(dataset.name))

    def benchmark(self) -> Dict[PairKey, BenchmarkResult]:
        """Benchmark every (dataset, model) pair, in registration order."""
        results: Dict[PairKey, BenchmarkResult] = {}
        for dataset_name, dataset in self.datasets.items():
            for model_name, upscaler in self.models.items():
                result = self.benchmark_pair(dataset, model_name, upscaler)
                results[(dataset_name, model_name)] = result
                logger.info('Result for model %s with scale %d for dataset %s: ssim=%s psnr=%s',
                            result.package_name or model_name, result.scale, dataset_name,
                            format_score(result.ssim), format_score(result.psnr))
        self.results = results
        return results

    def benchmark_pair(self, dataset: Dataset, model_name: str, upscaler: Upscaler) -> BenchmarkResult:
        model = upscaler.get_model()
        scale = model.scale

        with self._progress(None, f'Preparing {dataset.name} x{scale}') as bar:
            dataset.initialize(scale, self.cropped, progress=lambda: bar.update(1))

        files = dataset.get_files(scale, self.cropped)
        if self.n is not None:
            files = files[:self.n]

        upscaled_dir = self._pair_dir('upscaled', dataset, model_name)
        diff_dir = self._pair_dir('diff', dataset, model_name)

        def process_file(prepared: PreparedFile) -> Tuple[float, float]:
            return self._score_file(upscaler, prepared, upscaled_dir, diff_dir)

        ssim: List[float] = []
        psnr: List[float] = []
        start = time.perf_counter()
        with self._progress(len(files), f'{model_name} on {dataset.name}') as bar:
            for file_ssim, file_psnr in bounded_map(BENCHMARK_CONCURRENCY, files, process_file):
                ssim.append(file_ssim)
                psnr.append(file_psnr)
                bar.update(1)
        elapsed = time.perf_counter() - start

        info = model.package_information or {}
        return BenchmarkResult(
            dataset_name=dataset.name,
            model_name=model_name,
            scale=scale,
            file_count=len(files),
            ssim=_average(ssim),
            psnr=_average(psnr),
            package_name=info.get('name'),
            elapsed_seconds=elapsed,
        )

    def _score_file(self, upscaler: Upscaler, prepared: PreparedFile, upscaled_dir: str, diff_dir: str) -> Tuple[float, float]:
        name = prepared.file_name
        if not name.lower().endswith('.png'):
            name += '.png'
        upscaled_path = os.path.join(upscaled_dir, name)
        diff_path = os.path.join(diff_dir, name)
        os.makedirs(os.path.dirname(upscaled_path), exist_ok=True)
        os.makedirs(os.path.dirname(diff_path), exist_ok=True)

        with open(upscaled_path, 'wb') as f:
            f.write(upscaler.upscale_file(prepared.downscaled.path))
        width, height = get_size(upscaled_path)

        original = prepared.original
        if (width, height) != (original.width, original.height):
            raise DimensionMismatchError(
                f'Dimensions mismatch for {prepared.file_name}. Original image: '
                f'{original.width}x{original.height}, Upscaled image: {width}x{height}'
            )
        file_ssim = self.metric(upscaled_path, original.path, diff_path, 'ssim')
        file_psnr = self.metric(upscaled_path, original.path, diff_path, 'psnr')
        return file_ssim, file_psnr


def benchmark_performance(models: Sequence[ModelRef], dataset_definitions: Sequence[DatasetDefinition], n: Optional[int] = None, output_file: Optional[str] = None, cropped: Optional[int] = None, cache_dir: Optional[str] = None, check_tools: bool = True, show_progress: bool = False, **benchmarker_kwargs) -> Dict[PairKey, BenchmarkResult]:
    """Run the full benchmark and clean up once it has finished.

    ImageMagick is probed before any dataset or model work starts.
    """
    if check_tools:
        check_imagemagick_installation()
    datasets = [Dataset(definition, cache_dir=cache_dir) for definition in dataset_definitions]
    with Benchmarker(models, datasets, n=n, cropped=cropped, show_progress=show_progress, **benchmarker_kwargs) as benchmarker:
        results = benchmarker.benchmark()
    if output_file:
        generate_benchmark_report(results, output_file)
    return results


def _json_number(value: float) -> Optional[float]:
    if value is None or math.isnan(value) or math.isinf(value):
        return None
    return value


def generate_benchmark_report(results: Dict[PairKey, BenchmarkResult], output_file: str) -> str:
    """Write results to ``output_file`` as CSV (``.csv``) or JSON (anything else)."""
    directory = os.path.dirname(output_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    rows = [asdict(r) for r in results.values()]

    if output_file.lower().endswith('.csv'):
        with open(output_file, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(['dataset_name', 'model_name', 'package_name', 'scale', 'file_count', 'ssim', 'psnr', 'elapsed_seconds'])
            for r in results.values():
                writer.writerow([r.dataset_name, r.model_name, r.package_name, r.scale, r.file_count, r.ssim, r.psnr, r.elapsed_seconds])
        return output_file

    for row in rows:
        row['ssim'] = _json_number(row['ssim'])
        row['psnr'] = _json_number(row['psnr'])
    with open(output_file, 'w', encoding='utf-8') as f:
        payload = {
            'results': rows,
            'system_info': get_system_info(),
            'timestamp': int(time.time()),
        }
        json.dump(payload, f, indent=2)
    return output_file


def get_system_info() -> Dict[str, Any]:
    import cv2
    import numpy
    import PIL

    return {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'cpu_count': psutil.cpu_count(logical=True),
        'total_ram_bytes': psutil.virtual_memory().total,
        'numpy_version': numpy.__version__,
        'opencv_version': cv2.__version__,
        'pillow_version': PIL.__version__,
    }


def format_results(results: Dict[PairKey, BenchmarkResult]) -> List[str]:
    lines = []
    for r in results.values():
        lines.append(
            f"Result for model {r.package_name or r.model_name} with scale {r.scale} for dataset {r.dataset_name}: "
            f"ssim={format_score(r.ssim)} psnr={format_score(r.psnr)} "
            f"({r.file_count} files, {format_time(r.elapsed_seconds)})"
        )
    return lines


# Command-line interface

def prompt_string(question: str, default: Optional[str] = None) -> str:
    if default:
        return default
    answer = ''
    while not answer:
        answer = input(f'{question} ').strip()
    return answer


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f'must be zero or more, got {value}')
    return number


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f'must be a positive integer, got {value}')
    return number


def parse_dataset_argument(value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split ``NAME`` or ``NAME=PATH`` into (name, path)."""
    if not value:
        return None, None
    name, sep, path = value.partition('=')
    return name or None, (path or None) if sep else None


def get_dataset(name: Optional[str], path: Optional[str]) -> DatasetDefinition:
    if name:
        return DatasetDefinition(name=name, path=path)
    name = prompt_string('What is the name of the dataset you wish to use?')
    path = prompt_string('What is the path to the dataset you wish to use?', path)
    return DatasetDefinition(name=name, path=path)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog='upscale-benchmark', description='Measure SSIM/PSNR of upscaling models on an image dataset.')
    p.add_argument('dataset', nargs='?', help='Dataset name, optionally NAME=PATH')
    p.add_argument('output_file_positional', nargs='?', metavar='output-file', help='Where to write the report')
    p.add_argument('--dataset-path', help='Path to the source images of the dataset')
    p.add_argument('--outputFile', '--output-file', dest='output_file', help='Where to write the report (.json or .csv)')
    p.add_argument('-n', type=_non_negative_int, help='Benchmark at most this many files per dataset')
    p.add_argument('--cropped', type=_positive_int, help='Benchmark centred square crops of this size')
    p.add_argument('--model', action='append', dest='models', help=f'Model file (.py) or module[:attribute]; repeatable (default: {DEFAULT_MODEL})')
    p.add_argument('--cache-dir', help='Directory for cached dataset derivations')
    p.add_argument('--no-progress', dest='progress', action='store_false', help='Hide progress bars')
    p.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    models = args.models or ([DEFAULT_MODEL] if DEFAULT_MODEL else [])
    if not models:
        p.error('no model given; pass --model or set UPSCALE_BENCHMARK_MODEL')

    try:
        check_imagemagick_installation()
        name, path = parse_dataset_argument(args.dataset)
        dataset = get_dataset(name, args.dataset_path or path)
        output_file = args.output_file or args.output_file_positional
        results = benchmark_performance(models, [dataset], n=args.n, output_file=output_file, cropped=args.cropped, cache_dir=args.cache_dir, check_tools=False, show_progress=args.progress)
    except BenchmarkError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    for line in format_results(results):
        print(line)
    if output_file:
        print('Wrote', output_file)
    return 0


if __name__ == '__main__':
    sys.exit(main())
