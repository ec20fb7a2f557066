from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from kernel_conformance import CONTRACT_REF, __version__
from kernel_conformance.report import ConformanceReport

if TYPE_CHECKING:
    from kernel_conformance.report import CaseResult


def _parse_headers(values: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for raw in values:
        if "=" not in raw:
            raise SystemExit(f"Invalid --headers value (expected KEY=VALUE): {raw}")
        key, value = raw.split("=", 1)
        out[key.strip()] = value.strip()
    return out


def _load_headers_file(path: Path) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            raise SystemExit(f"Invalid headers file line (expected KEY=VALUE): {line}")
        key, value = stripped.split("=", 1)
        out[key.strip()] = value.strip()
    return out


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _write_output(report: ConformanceReport, *, fmt: str, out_path: str | None) -> None:
    if fmt == "json":
        text = report.to_json()
    elif fmt == "junit":
        text = report.to_junit_xml() + "\n"
    else:
        text = report.to_text()

    if out_path is None:
        sys.stdout.write(text)
        return
    Path(out_path).write_text(text, encoding="utf-8")
    sys.stdout.write(f"Wrote report: {out_path}\n")


def _progress(result: "CaseResult") -> None:
    if result.terminal:
        sys.stderr.write(f"[{result.position + 1}] {result.state.value} {result.name}\n")


def _check(args: argparse.Namespace) -> int:
    # Avoid importing network dependencies for `--version`.
    from kernel_conformance.api import run_async
    from kernel_conformance.config import load_settings
    from kernel_conformance.runner import RunnerOptions

    headers = _parse_headers(args.headers)
    if args.headers_file:
        headers.update(_load_headers_file(Path(args.headers_file)))

    try:
        settings = load_settings(args.config, overrides={"origin": args.origin})
    except (ValidationError, ValueError, OSError) as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    if args.stall_timeout is not None and args.stall_timeout <= 0:
        raise SystemExit("--stall-timeout must be positive")
    options = RunnerOptions(
        stall_timeout_s=args.stall_timeout,
        connect_timeout_s=args.connect_timeout,
    )
    report = asyncio.run(
        run_async(
            settings=settings,
            url=None if args.loopback else args.url,
            headers=headers or None,
            options=options,
            listeners=[_progress] if args.progress else None,
        )
    )
    _write_output(report, fmt=args.format, out_path=args.out)
    return 0 if report.ok else 1


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from kernel_conformance.bridge import build_app
    from kernel_conformance.config import load_settings
    from kernel_conformance.loopback import build_kernel

    try:
        settings = load_settings(args.config, overrides={"origin": args.origin})
    except (ValidationError, ValueError, OSError) as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    app = build_app(kernel=build_kernel(settings), api_key=args.api_key)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="kernel-conformance")
    parser.add_argument("--version", action="version", version=f"kernel-conformance {__version__} ({CONTRACT_REF})")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Run the kernel conformance suite")
    target = check.add_mutually_exclusive_group(required=True)
    target.add_argument("--url", type=str, help="Websocket URL of the kernel bridge")
    target.add_argument("--loopback", action="store_true", help="Check the in-process reference kernel")
    check.add_argument("--origin", type=str, help="Origin the kernel is expected to attribute to this harness")
    check.add_argument("--config", type=str, help="YAML file with suite settings")
    check.add_argument("--headers", action="append", default=[], help="Repeatable KEY=VALUE headers")
    check.add_argument("--headers-file", type=str, help="Path to a KEY=VALUE per line file")
    check.add_argument("--stall-timeout", type=float, help="Fail a check that does not settle within this many seconds")
    check.add_argument("--connect-timeout", type=float, default=10.0)
    check.add_argument("--progress", action="store_true", help="Print each terminal state to stderr")
    check.add_argument("--format", default="text", choices=["text", "json", "junit"])
    check.add_argument("--out", type=str, help="Write report to file instead of stdout")

    serve = sub.add_parser("serve", help="Serve the reference kernel over the bridge protocol")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8750)
    serve.add_argument("--origin", type=str)
    serve.add_argument("--config", type=str)
    serve.add_argument("--api-key", type=str, help="Require this value in the X-API-Key header")

    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    if args.command == "serve":
        return _serve(args)
    return _check(args)


if __name__ == "__main__":
    raise SystemExit(main())
