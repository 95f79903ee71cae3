"""Image similarity scores computed with ImageMagick's ``compare``.

``magick compare -metric SSIM upscaled.png original.png diff.png`` prints the
score to stderr (e.g. ``0.912345 (0.912345)``) and writes a visual diff to
the last argument. It exits with status 1 when the images differ, which is
the normal case here, so the exit status alone is not treated as a failure.
"""
from typing import List, Optional
import logging
import math
import os
import re

from errors import MetricParseError, ProcessExecutionError, ToolNotInstalledError
from process_runner import call_exec, run_script

logger = logging.getLogger(__name__)

IMAGEMAGICK_BINARY = os.environ.get('IMAGEMAGICK_BINARY', 'magick')
METRICS = ('ssim', 'psnr')

_LEADING_NUMBER = re.compile(r'^\s*([-+]?inf(?![a-z])|[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)', re.IGNORECASE)


def check_imagemagick_installation(binary: Optional[str] = None) -> None:
    """Fail fast if ImageMagick cannot be run.

    Raises:
        ToolNotInstalledError: when ``<binary> -version`` fails.
    """
    binary = binary or IMAGEMAGICK_BINARY
    try:
        call_exec([binary, '-version'], on_stdout=lambda _: None)
    except ProcessExecutionError as e:
        raise ToolNotInstalledError(
            f'Imagemagick does not appear to be installed ({binary} -version failed). Please install it for your system.'
        ) from e


def build_compare_command(metric: str, upscaled_path: str, original_path: str, diff_path: str, binary: Optional[str] = None) -> List[str]:
    if metric.lower() not in METRICS:
        raise ValueError(f'Unknown metric {metric!r}, expected one of {METRICS}')
    return [binary or IMAGEMAGICK_BINARY, 'compare', '-metric', metric.upper(), upscaled_path, original_path, diff_path]


def parse_metric_output(text: Optional[str]) -> float:
    """Return the leading numeric token of ``text``."""
    if not text or not text.strip():
        raise MetricParseError('No response from metric calculation')
    match = _LEADING_NUMBER.match(text)
    if match is None:
        raise MetricParseError(f'No metric found in output: {text.strip()[:200]}')
    value = match.group(1)
    if value.lower().lstrip('+-') == 'inf':
        return -math.inf if value.startswith('-') else math.inf
    return float(value)


def calculate_performance(upscaled_path: str, original_path: str, diff_path: str, metric: str) -> float:
    """Compare ``upscaled_path`` against ``original_path`` and return the score.

    Writes a diff image to ``diff_path`` for manual inspection.
    """
    os.makedirs(os.path.dirname(diff_path) or '.', exist_ok=True)
    cmd = build_compare_command(metric, upscaled_path, original_path, diff_path)
    stdout, stderr, error = run_script(cmd)
    output = stderr if stderr.strip() else stdout
    try:
        score = parse_metric_output(output)
    except MetricParseError as e:
        if error is not None:
            raise MetricParseError(f'{e}: {error}') from error
        raise
    logger.debug('%s %s vs %s = %s', metric, upscaled_path, original_path, score)
    return score
