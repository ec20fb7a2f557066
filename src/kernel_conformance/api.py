from __future__ import annotations

import asyncio

from .client import KernelClient
from .config import SuiteSettings
from .report import ConformanceReport, Listener
from .runner import ConformanceRunner, RunnerOptions


def make_client(
    *,
    url: str | None,
    settings: SuiteSettings,
    headers: dict[str, str] | None = None,
    options: RunnerOptions | None = None,
) -> tuple[KernelClient, str]:
    """Websocket client for ``url``, or the in-process reference kernel when ``url`` is None."""

    options = options or RunnerOptions()
    if url is None:
        from .loopback import LoopbackKernelClient, build_kernel

        return LoopbackKernelClient(build_kernel(settings)), "loopback"

    from .transport import WebSocketKernelClient

    client = WebSocketKernelClient(
        url=url,
        headers=headers,
        origin=f"https://{settings.origin}",
        connect_timeout_s=options.connect_timeout_s,
    )
    return client, url


async def run_async(
    *,
    settings: SuiteSettings,
    url: str | None = None,
    headers: dict[str, str] | None = None,
    options: RunnerOptions | None = None,
    client: KernelClient | None = None,
    listeners: list[Listener] | None = None,
) -> ConformanceReport:
    options = options or RunnerOptions()
    if client is None:
        client, target = make_client(url=url, settings=settings, headers=headers, options=options)
    else:
        target = url or type(client).__name__
    runner = ConformanceRunner(client=client, settings=settings, options=options, target=target, listeners=listeners)
    return await runner.run()


def run(
    *,
    settings: SuiteSettings | None = None,
    url: str | None = None,
    headers: dict[str, str] | None = None,
    options: RunnerOptions | None = None,
    listeners: list[Listener] | None = None,
) -> ConformanceReport:
    """
    Run the conformance suite programmatically.

    Pass a bridge ``url`` to check a kernel, or leave it as ``None`` to
    self-check against the in-process reference kernel.
    """

    return asyncio.run(
        run_async(
            settings=settings or SuiteSettings(),
            url=url,
            headers=headers,
            options=options,
            listeners=listeners,
        )
    )
