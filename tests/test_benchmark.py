import json
import math
import os

import pytest

import benchmark
from benchmark import (
    Benchmarker,
    BenchmarkResult,
    benchmark_performance,
    format_results,
    generate_benchmark_report,
    parse_dataset_argument,
)
from conftest import repeat_predict
from dataset import Dataset, DatasetDefinition
from errors import ConfigurationError, DimensionMismatchError, UpscaleError
from upscaler import ModelDefinition

SCORES = {
    'a.png': {'ssim': 0.9, 'psnr': 30.0},
    'b.png': {'ssim': 0.8, 'psnr': 28.0},
}


class StubMetric:
    def __init__(self, scores=SCORES):
        self.scores = scores
        self.calls = []

    def __call__(self, upscaled_path, original_path, diff_path, metric):
        self.calls.append((os.path.basename(upscaled_path), metric, diff_path))
        assert os.path.exists(upscaled_path)
        assert os.path.exists(original_path)
        return self.scores[os.path.basename(upscaled_path)][metric]


def _datasets(source_dir, cache_dir, name='even'):
    return [Dataset(DatasetDefinition(name=name, path=source_dir), cache_dir=cache_dir)]


def test_means_over_two_files(even_source_dir, cache_dir, repeat_model, tmp_path):
    metric = StubMetric()
    with Benchmarker([repeat_model], _datasets(even_source_dir, cache_dir), metric=metric, work_dir=str(tmp_path / 'work')) as b:
        results = b.benchmark()

    assert list(results) == [('even', 'repeat-x2')]
    result = results[('even', 'repeat-x2')]
    assert result.ssim == pytest.approx(0.85)
    assert result.psnr == pytest.approx(29.0)
    assert result.scale == 2
    assert result.file_count == 2
    assert result.package_name == 'repeat-x2'
    assert [(name, m) for name, m, _ in metric.calls] == [('a.png', 'ssim'), ('a.png', 'psnr'), ('b.png', 'ssim'), ('b.png', 'psnr')]
    assert all(diff.startswith(str(tmp_path / 'work' / 'diff')) for _, _, diff in metric.calls)


@pytest.mark.edge
def test_dimension_mismatch_aborts_pair(even_source_dir, cache_dir, tmp_path):
    wrong = ModelDefinition(scale=2, predict=repeat_predict(3), package_information={'name': 'liar'})
    b = Benchmarker([wrong], _datasets(even_source_dir, cache_dir), metric=StubMetric(), work_dir=str(tmp_path / 'work'))
    with pytest.raises(DimensionMismatchError, match='Dimensions mismatch'):
        b.benchmark()
    assert b.results == {}
    b.cleanup()


@pytest.mark.edge
def test_empty_dataset_gives_nan(tmp_path, cache_dir, repeat_model):
    empty = tmp_path / 'empty'
    empty.mkdir()
    with Benchmarker([repeat_model], _datasets(str(empty), cache_dir, name='empty'), metric=StubMetric()) as b:
        result = b.benchmark()[('empty', 'repeat-x2')]
    assert result.file_count == 0
    assert math.isnan(result.ssim)
    assert math.isnan(result.psnr)


def test_n_caps_files(even_source_dir, cache_dir, repeat_model):
    metric = StubMetric()
    with Benchmarker([repeat_model], _datasets(even_source_dir, cache_dir), n=1, metric=metric) as b:
        result = b.benchmark()[('even', 'repeat-x2')]
    assert result.file_count == 1
    assert result.ssim == pytest.approx(0.9)
    assert {name for name, _, _ in metric.calls} == {'a.png'}


def test_cropped_benchmark_uses_crops(even_source_dir, cache_dir, repeat_model):
    with Benchmarker([repeat_model], _datasets(even_source_dir, cache_dir), cropped=10, metric=StubMetric()) as b:
        result = b.benchmark()[('even', 'repeat-x2')]
        entry = b.datasets['even'].database['a.png']['2']
    assert result.file_count == 2
    assert list(entry['cropped']) == ['10']


def test_duplicate_dataset_names_keep_last(even_source_dir, source_dir, cache_dir, repeat_model, tmp_path):
    first = Dataset(DatasetDefinition(name='dup', path=source_dir), cache_dir=cache_dir)
    second = Dataset(DatasetDefinition(name='dup', path=even_source_dir), cache_dir=str(tmp_path / 'other_cache'))
    with Benchmarker([repeat_model], [first, second], metric=StubMetric()) as b:
        assert b.datasets['dup'] is second
        results = b.benchmark()
    assert list(results) == [('dup', 'repeat-x2')]


def test_pairs_follow_registration_order(even_source_dir, cache_dir, tmp_path):
    m1 = ModelDefinition(scale=2, predict=repeat_predict(2), package_information={'name': 'first'})
    m2 = ModelDefinition(scale=2, predict=repeat_predict(2), package_information={'name': 'second'})
    datasets = _datasets(even_source_dir, cache_dir, name='d1') + _datasets(even_source_dir, cache_dir, name='d2')
    with Benchmarker([m1, m2], datasets, metric=StubMetric()) as b:
        results = b.benchmark()
    assert list(results) == [('d1', 'first'), ('d1', 'second'), ('d2', 'first'), ('d2', 'second')]


def test_model_load_failure_aborts_run(even_source_dir, cache_dir):
    with Benchmarker(['no_such_model_module'], _datasets(even_source_dir, cache_dir), metric=StubMetric()) as b:
        with pytest.raises(UpscaleError):
            b.benchmark()


def test_cleanup_removes_work_dir(even_source_dir, cache_dir, repeat_model):
    b = Benchmarker([repeat_model], _datasets(even_source_dir, cache_dir), metric=StubMetric())
    work_dir = b.work_dir
    b.benchmark()
    assert os.path.isdir(os.path.join(work_dir, 'upscaled'))
    b.cleanup()
    assert not os.path.exists(work_dir)
    b.cleanup()


def test_negative_n_rejected(repeat_model):
    with pytest.raises(ConfigurationError):
        Benchmarker([repeat_model], [], n=-1)


def test_benchmark_performance_writes_json_report(even_source_dir, cache_dir, repeat_model, tmp_path):
    out = str(tmp_path / 'reports' / 'result.json')
    results = benchmark_performance(
        [repeat_model],
        [DatasetDefinition(name='even', path=even_source_dir)],
        output_file=out,
        cache_dir=cache_dir,
        check_tools=False,
        metric=StubMetric(),
    )
    assert results[('even', 'repeat-x2')].ssim == pytest.approx(0.85)
    with open(out, encoding='utf-8') as f:
        payload = json.load(f)
    assert payload['results'][0]['dataset_name'] == 'even'
    assert payload['results'][0]['psnr'] == pytest.approx(29.0)
    assert 'cpu_count' in payload['system_info']


def test_benchmark_performance_checks_tools_first(monkeypatch, cache_dir):
    from errors import ToolNotInstalledError

    def missing():
        raise ToolNotInstalledError('no magick')

    monkeypatch.setattr(benchmark, 'check_imagemagick_installation', missing)
    with pytest.raises(ToolNotInstalledError):
        benchmark_performance(['whatever'], [DatasetDefinition(name='x')], cache_dir=cache_dir)
    assert not os.path.exists(cache_dir)


def _result(ssim=0.5, psnr=25.0):
    return {('d', 'm'): BenchmarkResult(dataset_name='d', model_name='m', scale=2, file_count=1, ssim=ssim, psnr=psnr, elapsed_seconds=0.5)}


def test_report_nan_becomes_null(tmp_path):
    out = generate_benchmark_report(_result(ssim=float('nan')), str(tmp_path / 'r.json'))
    with open(out, encoding='utf-8') as f:
        payload = json.load(f)
    assert payload['results'][0]['ssim'] is None
    assert payload['results'][0]['psnr'] == 25.0


def test_report_csv(tmp_path):
    out = generate_benchmark_report(_result(), str(tmp_path / 'r.csv'))
    with open(out, encoding='utf-8') as f:
        lines = f.read().splitlines()
    assert lines[0].startswith('dataset_name,model_name')
    assert lines[1].startswith('d,m,')


def test_format_results():
    lines = format_results(_result())
    assert lines == ['Result for model m with scale 2 for dataset d: ssim=0.5000 psnr=25.0000 (1 files, 500.0 ms)']


@pytest.mark.parametrize('value,expected', [
    (None, (None, None)),
    ('div2k', ('div2k', None)),
    ('div2k=/data/div2k', ('div2k', '/data/div2k')),
    ('div2k=', ('div2k', None)),
])
def test_parse_dataset_argument(value, expected):
    assert parse_dataset_argument(value) == expected


def _fake_run(monkeypatch):
    captured = {}

    def fake_benchmark_performance(models, datasets, **kwargs):
        captured['models'] = models
        captured['datasets'] = datasets
        captured.update(kwargs)
        return _result()

    monkeypatch.setattr(benchmark, 'check_imagemagick_installation', lambda: None)
    monkeypatch.setattr(benchmark, 'benchmark_performance', fake_benchmark_performance)
    return captured


def test_main_with_positional_dataset(monkeypatch, capsys):
    captured = _fake_run(monkeypatch)
    rc = benchmark.main(['div2k=/data/div2k', 'out.json', '-n', '5', '--cropped', '64', '--model', 'models/bicubic.py', '--no-progress'])
    assert rc == 0
    assert captured['datasets'] == [DatasetDefinition(name='div2k', path='/data/div2k')]
    assert captured['models'] == ['models/bicubic.py']
    assert captured['n'] == 5
    assert captured['cropped'] == 64
    assert captured['output_file'] == 'out.json'
    assert captured['check_tools'] is False
    out = capsys.readouterr().out
    assert 'Result for model m' in out
    assert 'Wrote out.json' in out


def test_main_prompts_for_missing_dataset(monkeypatch):
    captured = _fake_run(monkeypatch)
    answers = iter(['set5', '/data/set5'])
    monkeypatch.setattr('builtins.input', lambda prompt='': next(answers))
    rc = benchmark.main(['--model', 'm.py', '--outputFile', 'r.json'])
    assert rc == 0
    assert captured['datasets'] == [DatasetDefinition(name='set5', path='/data/set5')]
    assert captured['output_file'] == 'r.json'


def test_main_reports_benchmark_errors(monkeypatch, capsys):
    from errors import ToolNotInstalledError

    def missing():
        raise ToolNotInstalledError('Imagemagick does not appear to be installed')

    monkeypatch.setattr(benchmark, 'check_imagemagick_installation', missing)
    assert benchmark.main(['ds', '--model', 'm.py']) == 1
    assert 'Imagemagick' in capsys.readouterr().err


def test_main_requires_a_model(monkeypatch):
    monkeypatch.setattr(benchmark, 'DEFAULT_MODEL', None)
    with pytest.raises(SystemExit):
        benchmark.main(['ds'])


@pytest.mark.edge
def test_main_reports_unreadable_image(monkeypatch, tmp_path, capsys):
    source = tmp_path / 'broken_ds'
    source.mkdir()
    (source / 'broken.png').write_bytes(b'this is not a png')
    monkeypatch.setattr(benchmark, 'check_imagemagick_installation', lambda: None)
    bicubic = os.path.join(os.path.dirname(__file__), '..', 'models', 'bicubic.py')
    rc = benchmark.main([f'ds={source}', '--model', bicubic, '--cache-dir', str(tmp_path / 'cache'), '--no-progress'])
    assert rc == 1
    err = capsys.readouterr().err
    assert 'Error: Cannot read image' in err
    assert 'broken.png' in err


@pytest.mark.parametrize('flag,value', [('-n', '-1'), ('--cropped', '0'), ('--cropped', 'abc')])
def test_main_rejects_invalid_counts(monkeypatch, flag, value):
    _fake_run(monkeypatch)
    with pytest.raises(SystemExit) as exc:
        benchmark.main(['ds', '--model', 'm.py', flag, value])
    assert exc.value.code == 2


def test_main_defaults_to_bundled_bicubic(monkeypatch):
    captured = _fake_run(monkeypatch)
    monkeypatch.setattr(benchmark, 'DEFAULT_MODEL', 'models.bicubic')
    assert benchmark.main(['ds=/data/ds']) == 0
    assert captured['models'] == ['models.bicubic']
