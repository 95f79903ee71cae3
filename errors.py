"""Exception hierarchy for the upscale benchmarking pipeline.

Configuration errors are raised before any work starts. Dataset, metric and
dimension errors abort the unit of work they occur in (a file, a
model/dataset pair, or the whole run) and are never retried.
"""


class BenchmarkError(Exception):
    """Base exception for everything raised by this project."""
    pass


class ConfigurationError(BenchmarkError):
    """The run cannot start with the given inputs or environment."""
    pass


class DatasetConfigurationError(ConfigurationError):
    """A dataset cannot be (re)processed, e.g. no source path was given."""
    pass


class ToolNotInstalledError(ConfigurationError):
    """An external command-line tool is not available."""
    pass


class DatasetError(BenchmarkError):
    """Base exception for dataset cache lookups and derivations."""
    pass


class MissingScaleError(DatasetError):
    """A cached file has never been processed at the requested scale."""
    pass


class MissingCropError(DatasetError):
    """A cached file has never been processed with the requested crop size."""
    pass


class CacheCorruptionError(DatasetError):
    """The on-disk dataset database does not have the expected shape."""
    pass


class ProcessExecutionError(BenchmarkError):
    """An external command exited with a non-zero status or could not start."""

    def __init__(self, message, returncode=None, stdout='', stderr=''):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class MetricParseError(BenchmarkError):
    """The comparison tool produced no numeric score."""
    pass


class UpscaleError(BenchmarkError):
    """A model could not be resolved or produced unusable output."""
    pass


class ModelNotReadyError(UpscaleError):
    """The model is still loading."""
    pass


class DimensionMismatchError(BenchmarkError):
    """An upscaled image does not match the dimensions of its reference."""
    pass
