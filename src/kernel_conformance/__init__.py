from __future__ import annotations

__all__ = [
    "__version__",
    "CONTRACT_REF",
    "ConformanceReport",
    "ConformanceRunner",
    "KernelClient",
    "KernelError",
    "RunnerOptions",
    "SequentialScheduler",
    "SuiteSettings",
    "run",
]

__version__ = "0.3.0"
CONTRACT_REF = "kernel-rpc/v1@v0.3.0"

from .errors import KernelError  # noqa: E402
from .client import KernelClient  # noqa: E402
from .config import SuiteSettings  # noqa: E402
from .report import ConformanceReport  # noqa: E402
from .scheduler import SequentialScheduler  # noqa: E402
from .runner import ConformanceRunner, RunnerOptions  # noqa: E402
from .api import run  # noqa: E402
