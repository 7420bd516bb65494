# nodelog/config package
# Runtime configuration: environment variables over runtime.yaml over defaults.

from .runtime_config import IngestConfig, load_config

__all__ = ["IngestConfig", "load_config"]
