import argparse
import json
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ml_sidecar.backend.application.orchestrator import Orchestrator
from ml_sidecar.backend.core.types import EnvironmentVariant, ProgressMessage
from ml_sidecar.backend.runtime import RuntimeConfig, SidecarRuntime
from ml_sidecar.backend.transport.http_server import start_http_server
from ml_sidecar.config import DEFAULT_CONFIG_PATH, SidecarConfig, load_config
from ml_sidecar.errors import (
    OperationCancelledError,
    OperationSupersededError,
    SidecarError,
    format_error,
)
from ml_sidecar.model.backends import BACKENDS
from ml_sidecar.utils.logger import LOGGER, configure_logging

EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def _print_event(message: ProgressMessage) -> None:
    print(json.dumps(message.as_event(), ensure_ascii=False), flush=True)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str), flush=True)


def _parse_option(raw: str) -> Dict[str, Any]:
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got '{raw}'")
    try:
        parsed = json.loads(value)
    except ValueError:
        parsed = value
    return {key.strip(): parsed}


def _run_interruptible(orchestrator: Orchestrator, fn: Callable[[], Any]) -> Any:
    """Run ``fn`` on a worker thread so Ctrl-C becomes a cooperative cancel."""
    outcome: Dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["result"] = fn()
        except BaseException as exc:  # pylint: disable=broad-exception-caught
            outcome["error"] = exc

    thread = threading.Thread(target=_target, name="sidecar-cli-op", daemon=True)
    thread.start()
    while thread.is_alive():
        try:
            thread.join(timeout=0.5)
        except KeyboardInterrupt:
            LOGGER.info("Interrupted; cancelling %s", orchestrator.backend_id)
            orchestrator.cancel()
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


def _variant(value: Optional[str]) -> Optional[EnvironmentVariant]:
    if value is None:
        return None
    return EnvironmentVariant(value)


def execute(args: argparse.Namespace, runtime: SidecarRuntime) -> Any:
    """Dispatch one CLI command and return its JSON-ready result."""
    if args.command == "status":
        backend_ids: List[str] = [args.backend] if args.backend else list(BACKENDS)
        return [
            runtime.orchestrator(backend_id).status().as_dict()
            for backend_id in backend_ids
        ]

    orchestrator = runtime.orchestrator(args.backend)
    if args.command == "install":
        variant = _variant(args.variant) or EnvironmentVariant.CPU
        return _run_interruptible(
            orchestrator, lambda: orchestrator.install(variant, _print_event)
        ).as_dict()
    if args.command == "switch":
        return orchestrator.switch(EnvironmentVariant(args.variant)).as_dict()
    if args.command == "uninstall":
        return orchestrator.uninstall(_variant(args.variant)).as_dict()
    if args.command == "verify":
        result = orchestrator.verify(_variant(args.variant))
        return {
            "variant": result.variant.value,
            "ok": result.ok,
            "detail": result.detail,
        }
    if args.command == "download":
        outcome = _run_interruptible(
            orchestrator, lambda: orchestrator.download(args.model, _print_event)
        )
        return {
            "model": outcome.model,
            "path": str(outcome.path),
            "bytes_transferred": outcome.bytes_transferred,
            "already_present": outcome.already_present,
        }
    if args.command == "delete-model":
        removed = orchestrator.delete_model(args.model)
        return {"removed": [str(path) for path in removed]}
    if args.command == "run":
        options: Dict[str, Any] = {}
        for item in args.options or []:
            options.update(item)
        result = _run_interruptible(
            orchestrator, lambda: orchestrator.run(options, _print_event)
        )
        return {
            "payload": result.payload,
            "elapsed_sec": result.elapsed_sec,
            "device_info": result.device_info,
        }
    raise SystemExit(f"unknown command {args.command}")


def serve(config: SidecarConfig) -> None:
    """Run the HTTP control surface until interrupted."""
    runtime = SidecarRuntime(
        RuntimeConfig.from_sidecar_config(config), max_workers=config.max_workers
    )
    handle = start_http_server(runtime, host=config.http_host, port=config.http_port)
    LOGGER.info(
        "ML sidecar listening on http://%s:%s", config.http_host, config.http_port
    )
    try:
        while handle.thread.is_alive():
            handle.thread.join(timeout=0.5)
    except KeyboardInterrupt:
        LOGGER.info("Shutting down")
    finally:
        runtime.close()
        handle.stop(timeout=5.0)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage isolated ML backend environments, models and workers"
    )
    parser.add_argument(
        "--config",
        type=str,
        help=f"Path to YAML config (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. TRACE, DEBUG, INFO); overrides config",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional log file path; overrides config",
    )
    backends = sorted(BACKENDS)
    variants = [variant.value for variant in EnvironmentVariant]
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show environment and model status")
    status.add_argument("backend", nargs="?", choices=backends)

    install = sub.add_parser("install", help="Install an environment variant")
    install.add_argument("backend", choices=backends)
    install.add_argument("--variant", choices=variants, default=None)

    switch = sub.add_parser("switch", help="Activate an installed variant")
    switch.add_argument("backend", choices=backends)
    switch.add_argument("variant", choices=variants)

    uninstall = sub.add_parser("uninstall", help="Remove one or all variants")
    uninstall.add_argument("backend", choices=backends)
    uninstall.add_argument("--variant", choices=variants, default=None)

    verify = sub.add_parser("verify", help="Import-check an environment")
    verify.add_argument("backend", choices=backends)
    verify.add_argument("--variant", choices=variants, default=None)

    download = sub.add_parser("download", help="Download a model")
    download.add_argument("backend", choices=backends)
    download.add_argument("--model", default=None)

    delete = sub.add_parser("delete-model", help="Delete a downloaded model")
    delete.add_argument("backend", choices=backends)
    delete.add_argument("--model", default=None)

    run = sub.add_parser("run", help="Run the backend's one-shot worker")
    run.add_argument("backend", choices=backends)
    run.add_argument(
        "-o",
        "--option",
        dest="options",
        action="append",
        type=_parse_option,
        help="Worker option as KEY=VALUE (VALUE parsed as JSON when possible)",
    )

    sub.add_parser("serve", help="Run the HTTP control server")
    return parser.parse_args(argv)


def configure_from_args(args: argparse.Namespace) -> SidecarConfig:
    config_arg_path = Path(args.config).expanduser() if args.config else None
    effective_config_path = config_arg_path or DEFAULT_CONFIG_PATH
    config = load_config(effective_config_path)

    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file

    configure_logging(config.log_level, config.log_file)
    if effective_config_path.exists():
        LOGGER.info("Loaded sidecar config from %s", effective_config_path)
    else:
        LOGGER.info(
            "Sidecar config file not found at %s; using defaults/CLI overrides",
            effective_config_path,
        )
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config = configure_from_args(args)
    if args.command == "serve":
        serve(config)
        return 0
    runtime = SidecarRuntime(
        RuntimeConfig.from_sidecar_config(config), max_workers=config.max_workers
    )
    try:
        _print_json(execute(args, runtime))
    except OperationSupersededError:
        LOGGER.info("Operation superseded")
        return EXIT_CANCELLED
    except OperationCancelledError as exc:
        print(format_error(exc.code, exc.detail), file=sys.stderr)
        return EXIT_CANCELLED
    except SidecarError as exc:
        print(format_error(exc.code, exc.detail), file=sys.stderr)
        return EXIT_FAILURE
    finally:
        runtime.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
