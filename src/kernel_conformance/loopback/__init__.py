from __future__ import annotations

from typing import TYPE_CHECKING

from .client import LoopbackKernelClient
from .kernel import KERNEL_VERSION, Fetcher, LoopbackKernel, QueryContext
from .modules import HelperModule, KernelModule, TestModule

if TYPE_CHECKING:
    from ..config import SuiteSettings

__all__ = [
    "KERNEL_VERSION",
    "HelperModule",
    "KernelModule",
    "LoopbackKernel",
    "LoopbackKernelClient",
    "QueryContext",
    "TestModule",
    "build_kernel",
]


def build_kernel(
    settings: "SuiteSettings",
    *,
    user_seed: bytes | None = None,
    fetcher: Fetcher | None = None,
) -> LoopbackKernel:
    """A kernel hosting the test and helper modules named by ``settings``."""

    kernel = LoopbackKernel(origin=settings.origin, user_seed=user_seed, fetcher=fetcher)
    kernel.register(
        settings.test_module,
        TestModule(helper_module=settings.helper_module, cors_urls=list(settings.cors_urls)),
    )
    kernel.register(settings.helper_module, HelperModule(test_module=settings.test_module))
    return kernel
