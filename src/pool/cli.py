"""CLI entrypoint for the runner pool manager.

Commands: start, stop, restart, scale, status, logs, clean, profiles and
help. ``run`` keeps a controller in the foreground and ``history`` reads past
reconciliations from Redis.

Exit codes: 0 on success, 1 on configuration errors, bad usage or failed
orchestration, 130 when interrupted.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import textwrap
import threading
import time
from datetime import datetime
from functools import partial

from src.common import constants
from src.common.config import PoolConfig, ProfileConfig, load_dotenv
from src.common.console import (
    banner,
    error,
    fail,
    header,
    info,
    ok,
    paint_state,
    section,
    warn,
)
from src.common.errors import (
    ConfigurationError,
    OrchestrationError,
    RegistrationError,
    ScaleError,
    UnknownCommandError,
)
from src.common.logging import bind_pool, configure_structlog
from src.common.redis import get_reconcile_history, get_redis, store_reconcile
from src.pool.manager import PoolManager
from src.pool.registration import RegistrationClient, build_token_cache
from src.pool.replica import LifecycleState
from src.pool.runtime import build_runtime, profile_services

PROG = "runner_manager.py"
COMMANDS = (
    "start", "stop", "restart", "scale", "status", "logs", "clean",
    "profiles", "run", "history", "help",
)
_HELP_FLAGS = ("help", "--help", "-h")


def usage() -> str:
    d = constants.DEFAULT_REPLICAS
    return textwrap.dedent(f"""\
        GitHub Runner Manager

        Usage: {PROG} [COMMAND] [OPTIONS]

        Commands:
          start [replicas]     Start runners (default: {d})
          stop [--now]         Stop all runners (busy runners drain first)
          restart [replicas]   Restart runners with optional replica count
          scale <replicas>     Scale runners to specific count (--no-wait: leave busy
                               runners draining in the background)
          status               Show runner status
          logs [service]       Follow logs (default: every pool container)
          clean                Clean up stopped containers and volumes
          profiles             List available profiles
          run [replicas]       Keep reconciling in the foreground until Ctrl-C
          history [-n N]       Show recent reconciliations (needs Redis)

        Profiles:
          default             Basic runners only
          enhanced            Include enhanced runners with extra tools
          cache               Include Docker registry cache
          monitoring          Include Portainer dashboard
          all                 Include all services

        Examples:
          {PROG} start 5                    # Start 5 basic runners
          {PROG} start 3 --profile enhanced # Start 3 enhanced runners
          {PROG} scale 10                   # Scale to 10 runners
          {PROG} logs cache                 # Show registry cache logs
          {PROG} clean                      # Clean up resources

        Environment Variables (set in .env):
          GITHUB_OWNER        GitHub username or organization (required)
          GITHUB_TOKEN        GitHub Personal Access Token (required)
          GITHUB_REPOSITORY   Repository name (optional, for repo runners)
          RUNNER_LABELS       Custom labels (optional)
          RUNNER_NAME_PREFIX  Runner name prefix (optional)
          RUNNER_GROUP        Runner group (optional)
          RUNNER_DISABLE_AUTO_UPDATE  Disable runner self-update (optional)
          RUNTIME_BACKEND     local | cloud (cloud needs DOCKER_CONTEXT)
    """)


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that reports bad usage as UnknownCommandError."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UnknownCommandError(message)


def _replica_count(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid replica count: {raw!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"replica count must be >= 0, got {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog=PROG, add_help=False)
    sub = parser.add_subparsers(dest="command")

    for name in ("start", "restart", "run"):
        p = sub.add_parser(name)
        p.add_argument("replicas", nargs="?", type=_replica_count, default=None)
        p.add_argument("--profile", default="", help="Comma-separated profiles")
        if name == "run":
            p.add_argument("--interval", type=float, default=None,
                           help="Seconds between reconciliation passes")

    p = sub.add_parser("stop")
    p.add_argument("--now", action="store_true",
                   help="Do not wait for busy runners to finish their jobs")

    p = sub.add_parser("scale")
    p.add_argument("replicas", nargs="?", type=_replica_count, default=None)
    p.add_argument("--no-wait", action="store_true",
                   help="Leave busy runners draining instead of waiting for them")

    sub.add_parser("status")

    p = sub.add_parser("logs")
    p.add_argument("service", nargs="?", default=None)

    sub.add_parser("clean")
    sub.add_parser("profiles")

    p = sub.add_parser("history")
    p.add_argument("-n", "--limit", type=int, default=20)
    return parser


# ── wiring ───────────────────────────────────────────────────────────────────


def _load_config(*, require: bool) -> PoolConfig:
    config = PoolConfig.from_env()
    if require:
        config.require_valid()
    return config


def _build(config: PoolConfig):
    """Runtime, registration client and pool manager for one pool."""
    bind_pool(config.name_prefix, config.backend)
    runtime = build_runtime(config)
    stop = threading.Event()
    registration = RegistrationClient(config, build_token_cache(config), stop=stop)
    history = None
    if config.redis_enabled:
        get_redis(config)
        history = partial(store_reconcile, config.name_prefix)
    manager = PoolManager(config, runtime, registration, history=history, stop=stop)
    return runtime, registration, manager


def _prepare_profiles(runtime, config: PoolConfig, profiles: ProfileConfig) -> None:
    if profiles.enhanced and runtime.ensure_image(config.enhanced_image,
                                                  constants.ENHANCED_DOCKERFILE):
        ok(f"Built enhanced runner image {config.enhanced_image}")
    for service in profile_services(profiles):
        runtime.ensure_service(service)
        ok(f"Service '{service.name}' is up ({service.image})")


# ── commands ─────────────────────────────────────────────────────────────────


def cmd_start(args: argparse.Namespace) -> None:
    replicas = constants.DEFAULT_REPLICAS if args.replicas is None else args.replicas
    profiles = ProfileConfig.parse(args.profile)
    info(f"Starting {replicas} GitHub runners (profiles: {profiles}) ...")

    config = _load_config(require=True)
    runtime, registration, manager = _build(config)
    registration.validate_credentials()

    _prepare_profiles(runtime, config, profiles)
    manager.sync()
    manager.reconcile(replicas, profiles)
    ok("Runners started successfully!")

    info("Waiting for runners to register ...")
    if not manager.wait_for_registration(constants.REGISTRATION_WAIT_SECS):
        warn("Some runners have not come online yet; check `status` shortly.")
    _show_status(config, runtime, registration)


def cmd_stop(args: argparse.Namespace) -> None:
    info("Stopping all runners ...")
    config = _load_config(require=True)
    runtime, _, manager = _build(config)

    manager.sync()
    draining = manager.state.in_state(LifecycleState.BUSY)
    if draining and not args.now:
        info(f"Waiting up to {config.drain_timeout:.0f}s for {len(draining)} busy runner(s) ...")
    manager.shutdown(0 if args.now else None)

    for service in profile_services(ProfileConfig.parse("all")):
        runtime.remove_service(service.name)
    ok("All runners stopped")


def cmd_restart(args: argparse.Namespace) -> None:
    info("Restarting runners ...")
    cmd_stop(argparse.Namespace(now=False))
    time.sleep(5)
    cmd_start(args)


def cmd_scale(args: argparse.Namespace) -> None:
    if args.replicas is None:
        raise UnknownCommandError(
            f"Please specify number of replicas\nUsage: {PROG} scale <replicas>"
        )
    info(f"Scaling to {args.replicas} runners ...")
    config = _load_config(require=True)
    runtime, registration, manager = _build(config)

    manager.sync()
    state = manager.reconcile(args.replicas)
    draining = state.in_state(LifecycleState.DRAINING)
    if draining and not args.no_wait:
        info(f"Waiting up to {config.drain_timeout:.0f}s for {len(draining)} busy runner(s) "
             "to finish their jobs ...")
        if not manager.wait_for_drain():
            warn("Some runners are still busy; the next command removes them once idle.")
    ok(f"Scaled to {args.replicas} runners")
    _show_status(config, runtime, registration)


def cmd_status(args: argparse.Namespace) -> None:
    config = _load_config(require=False)
    runtime = build_runtime(config)
    registration = None
    if config.owner and config.token:
        registration = RegistrationClient(config)
    _show_status(config, runtime, registration)


def _show_status(config: PoolConfig, runtime, registration) -> None:
    info("Runner Status:")
    records = runtime.list_replicas()

    runners: dict[str, dict] = {}
    if registration is not None:
        try:
            runners = registration.list_runners()
        except RegistrationError as exc:
            warn(f"Could not query GitHub for runner status: {exc}")

    print(section(f"Pool '{config.name_prefix}'"))
    print(f"  {'Replica':<28} {'Container':<12} {'GitHub':<10} {'Busy':<6} Image")
    print(f"  {'─' * 28} {'─' * 12} {'─' * 10} {'─' * 6} {'─' * 20}")
    for record in records:
        runner = runners.get(record.replica_id)
        status = runner.get("status", "?") if runner else ("-" if not runners else "absent")
        busy = "yes" if runner and runner.get("busy") else "no"
        print(f"  {record.replica_id:<28} {paint_state(record.state, 12)} "
              f"{paint_state(status, 10)} {busy:<6} {record.image}")
    if not records:
        print("  (no runners)")

    services = runtime.list_services()
    if services:
        print(section("Services"))
        for name in services:
            print(f"  {name}")

    print()
    info("Resource Usage:")
    usage_table = runtime.stats()
    print(usage_table.rstrip() if usage_table else "  No running containers")
    print()

    active = sum(1 for r in records if r.running)
    info(f"Active Runners: {active}")


def cmd_logs(args: argparse.Namespace) -> None:
    config = _load_config(require=False)
    runtime = build_runtime(config)
    if args.service:
        info(f"Following logs for {args.service} (Ctrl-C to stop) ...")
    else:
        info("Following logs for every pool container (Ctrl-C to stop) ...")
    rc = runtime.logs(args.service)
    if rc not in (0, 130):
        raise OrchestrationError(f"docker logs exited with {rc}", returncode=rc)


def cmd_clean(args: argparse.Namespace) -> None:
    info("Cleaning up resources ...")
    config = _load_config(require=False)
    build_runtime(config).clean()
    ok("Cleanup completed")


def cmd_profiles(args: argparse.Namespace) -> None:
    info("Available Profiles:")
    print()
    for name, description in constants.PROFILE_DESCRIPTIONS.items():
        print(f"  {name:<11} - {description}")
    print()
    print("Usage examples:")
    print(f"  {PROG} start 3 --profile enhanced")
    print(f"  {PROG} start 2 --profile enhanced,cache")
    print(f"  {PROG} start 5 --profile all")


def cmd_run(args: argparse.Namespace) -> None:
    replicas = constants.DEFAULT_REPLICAS if args.replicas is None else args.replicas
    profiles = ProfileConfig.parse(args.profile)
    config = _load_config(require=True)
    runtime, registration, manager = _build(config)
    registration.validate_credentials()

    print()
    print(banner(
        f"Runner Pool Controller: {config.name_prefix}",
        f"Desired replicas: {replicas}  profiles: {profiles}  backend: {config.backend}",
    ))
    print()

    _prepare_profiles(runtime, config, profiles)
    manager.sync()

    signal.signal(signal.SIGTERM, lambda signum, frame: manager.stop())
    try:
        manager.run_forever(replicas, profiles, args.interval)
    except KeyboardInterrupt:
        manager.stop()
        print()
        warn("Interrupted; controller stopped. Runners keep running (use `stop`).")


def cmd_history(args: argparse.Namespace) -> None:
    config = _load_config(require=False)
    if not config.redis_enabled:
        raise ConfigurationError("REDIS_HOST is required for reconciliation history")
    get_redis(config)
    records = get_reconcile_history(config.name_prefix, args.limit)

    print(header(f"RECONCILIATIONS: {config.name_prefix}"))
    print(f"  {'When':<20} {'Outcome':<10} {'Desired':>7} {'Active':>7} {'Tries':>5}  Error")
    for rec in records:
        when = datetime.fromtimestamp(float(rec.get("timestamp_unix", 0)))
        print(
            f"  {when:%Y-%m-%d %H:%M:%S}  {rec.get('outcome', ''):<10} "
            f"{rec.get('desired_count', ''):>7} {rec.get('active_count', ''):>7} "
            f"{rec.get('attempts', ''):>5}  {rec.get('error', '')}"
        )
    if not records:
        print("  (no reconciliations recorded)")
    print()


HANDLERS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "scale": cmd_scale,
    "status": cmd_status,
    "logs": cmd_logs,
    "clean": cmd_clean,
    "profiles": cmd_profiles,
    "run": cmd_run,
    "history": cmd_history,
}


def _usage_error(message: str) -> None:
    error(message)
    print()
    print(usage())
    sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    argv = sys.argv[1:] if argv is None else list(argv)

    load_dotenv()
    configure_structlog(os.environ.get("LOG_LEVEL", "INFO"))

    if not argv or argv[0] not in COMMANDS + _HELP_FLAGS:
        _usage_error(f"Unknown command: {argv[0] if argv else ''}")
    if argv[0] in _HELP_FLAGS:
        print(usage())
        return

    try:
        args = build_parser().parse_args(argv)
        HANDLERS[args.command](args)
    except UnknownCommandError as exc:
        _usage_error(str(exc))
    except ConfigurationError as exc:
        error("Required configuration missing or invalid!")
        for problem in exc.problems:
            print(f"  - {problem}", file=sys.stderr)
        print("Please set them in your environment or a .env file.", file=sys.stderr)
        example, env = constants.ENV_EXAMPLE_FILE.name, constants.ENV_FILE.name
        print(f"You can copy {example} and modify it:", file=sys.stderr)
        print(f"  cp {example} {env}", file=sys.stderr)
        sys.exit(1)
    except ScaleError as exc:
        fail(f"Failed to scale runners: {exc}")
    except (OrchestrationError, RegistrationError) as exc:
        fail(f"{argv[0].capitalize()} failed: {exc}")
    except KeyboardInterrupt:
        print()
        warn("Interrupted by user")
        sys.exit(130)
