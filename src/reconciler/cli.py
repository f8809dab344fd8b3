"""CLI handlers for reconciliation verbs (plan, apply, destroy, validate, output, state).

Usage:
    reconcile plan -c <config> [--state PATH] [--json-output] [--detailed-exitcode]
    reconcile apply -c <config> [--yes] [--workers N] [--timeout S] [--lock-timeout S]
    reconcile destroy (-c <config> | --state PATH) [--yes]
    reconcile validate -c <config>
    reconcile output [NAME] (-c <config> | --state PATH)
    reconcile state list|show [ID] (-c <config> | --state PATH)

Exit codes:
    0  success
    1  execution failure (provider error, timeout, cancelled, aborted)
    2  configuration error (parse, reference, cycle, invalid settings)
    3  state lock held by another run
    4  output error
    5  plan --detailed-exitcode with pending changes
"""

import argparse
import json
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any, Optional

from config import ConfigError, EngineSettings, default_state_path, load_settings
from manifest import Configuration, load_configuration
from providers.registry import ProviderRegistry, default_registry
from reconciler.differ import NOOP, Plan, diff, diff_destroy
from reconciler.errors import (
    GraphError,
    LockHeldError,
    OutputError,
    ReconcileError,
    ReferenceError,
    StateError,
)
from reconciler.executor import CANCELLED, PlanExecutor, RunResult
from reconciler.graph import ResourceGraph
from reconciler.outputs import attributes_by_id, resolve_outputs
from reconciler.state import StateStore
from values import render

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_LOCKED = 3
EXIT_OUTPUT = 4
EXIT_CHANGES = 5


def exit_code_for(error: Exception) -> int:
    """Map an engine error to the process exit code."""
    if isinstance(error, (ConfigError, ReferenceError, GraphError)):
        return EXIT_CONFIG
    if isinstance(error, LockHeldError):
        return EXIT_LOCKED
    if isinstance(error, OutputError):
        return EXIT_OUTPUT
    return EXIT_FAILURE


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'reconcile {verb}',
        description=description,
    )
    parser.add_argument(
        '--config', '-c',
        help='Configuration file (YAML or JSON)',
    )
    parser.add_argument(
        '--state',
        help='State file (default: .states/<name>/state.json)',
    )
    parser.add_argument(
        '--settings',
        help='Engine settings file (default: $RECONCILE_SETTINGS or ./reconcile.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--workers',
        type=int,
        help='Max concurrent operations on independent resources',
    )
    parser.add_argument(
        '--timeout',
        type=float,
        help='Per-operation timeout in seconds',
    )
    parser.add_argument(
        '--lock-timeout',
        type=float,
        help='Seconds to wait for the state lock',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _emit_json(verb: str, success: bool, duration: float, **payload: Any) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
    }
    output.update(payload)
    print(json.dumps(output, indent=2, default=str))


def _fail(verb: str, args, error: Exception, start: float) -> int:
    """Report an error and return its exit code."""
    rc = exit_code_for(error)
    if getattr(args, 'json_output', False):
        payload: dict[str, Any] = {'error': str(error), 'exit_code': rc}
        resource_id = getattr(error, 'resource_id', None)
        if resource_id:
            payload['resource_id'] = resource_id
        _emit_json(verb, False, time.time() - start, **payload)
    else:
        print(f"Error: {error}", file=sys.stderr)
    return rc


def _settings_for(args, configuration: Optional[Configuration]) -> EngineSettings:
    overrides = {
        'state_path': getattr(args, 'state', None),
        'workers': getattr(args, 'workers', None),
        'timeout': getattr(args, 'timeout', None),
        'lock_timeout': getattr(args, 'lock_timeout', None),
    }
    return load_settings(
        settings_file=Path(args.settings) if args.settings else None,
        configuration_settings=configuration.settings if configuration else None,
        cli_overrides=overrides,
    )


def _load(args, registry: ProviderRegistry, require_config: bool = True):
    """Load configuration, graph and settings from parsed args.

    Returns:
        (configuration, graph, settings, state_path); configuration and
        graph are None when no -c was given and require_config is False

    Raises:
        ConfigError, ReconcileError: On invalid input
    """
    configuration = graph = None
    if args.config:
        configuration = load_configuration(Path(args.config))
        graph = ResourceGraph(configuration, registry)
    elif require_config:
        raise ConfigError("specify a configuration with -c/--config")

    settings = _settings_for(args, configuration)
    state_path = settings.state_path
    if state_path is None:
        if configuration is None:
            raise ConfigError("specify a configuration with -c/--config or a state file with --state")
        state_path = default_state_path(configuration.name)
    return configuration, graph, settings, state_path


def _print_plan(plan: Plan, verbose: bool = False) -> None:
    if not plan.has_changes:
        print("No changes. State matches configuration.")
        return
    print()
    shown: set[str] = set()
    for entry in plan.entries:
        if entry.action == NOOP:
            if verbose:
                print(f"    {entry.id}")
            continue
        if entry.replace and not entry.deposed:
            if entry.id in shown:
                continue
            shown.add(entry.id)
        line = f"  {entry.symbol:<3} {entry.id}"
        if entry.reason:
            line += f" ({entry.reason})"
        print(line)
        if verbose:
            for name in entry.changed_attributes():
                old = json.dumps(render(entry.old.get(name)))
                new = json.dumps(render(entry.new.get(name)))
                print(f"        {name}: {old} -> {new}")
    print()
    print(f"Plan: {plan.summary()}")


def _print_result(verb: str, result: RunResult) -> None:
    for rid in result.applied:
        print(f"  ✓ {rid}")
    if result.failed:
        print(f"  ✗ {result.failed}: {result.error}")
    for rid in result.skipped:
        print(f"  - {rid} (skipped)")
    if result.success:
        print(f"\n{verb.capitalize()} complete: {len(result.applied)} resource(s) changed")
    elif result.status == CANCELLED:
        print(f"\n{verb.capitalize()} cancelled: {len(result.skipped)} entries not started")
    else:
        print(f"\n{verb.capitalize()} failed at {result.failed}")


def _confirm(message: str) -> bool:
    print(f"\n{message}")
    response = input("Continue? [y/N] ").strip().lower()
    if response != 'y':
        print("Aborted.")
        return False
    return True


def _execute(executor: PlanExecutor, plan: Plan) -> RunResult:
    """Run the executor with SIGINT wired to cancellation.

    Must be called with the store lock held. Timed-out operations are waited
    for before returning, so whatever they created is committed to state
    before the caller releases the lock.
    """
    def _on_interrupt(signum, frame):
        executor.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _on_interrupt)
    except ValueError:
        # Not the main thread; cancellation stays available via executor.cancel()
        result = executor.execute(plan)
    else:
        try:
            result = executor.execute(plan)
        finally:
            signal.signal(signal.SIGINT, previous)

    if result.abandoned:
        logger.warning(f"[apply] Waiting for {len(result.abandoned)} timed-out operation(s) "
                       f"to finish before releasing the state lock")
        result.settle()
    return result


def _report_run(verb: str, args, plan: Plan, result: RunResult, start: float,
                rc: int, error: Optional[Exception] = None) -> int:
    """Report a run that did not fully succeed, including what was applied."""
    if args.json_output:
        payload: dict[str, Any] = {'plan': plan.to_dict(), 'result': result.to_dict(), 'exit_code': rc}
        if error is not None:
            payload['error'] = str(error)
        _emit_json(verb, False, time.time() - start, **payload)
    else:
        _print_result(verb, result)
        if error is not None:
            print(f"Error: {error}", file=sys.stderr)
    return rc


def validate_main(argv: list, registry: Optional[ProviderRegistry] = None) -> int:
    """Handle 'validate' verb: parse and build the graph only."""
    parser = _common_parser('validate', 'Validate configuration and references')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    registry = registry or default_registry()
    start = time.time()

    try:
        configuration, graph, _settings, _state_path = _load(args, registry)
    except (ReconcileError, ConfigError) as e:
        return _fail('validate', args, e, start)

    if args.json_output:
        _emit_json('validate', True, time.time() - start,
                   name=configuration.name,
                   resources=graph.topological_order(),
                   edges=[list(edge) for edge in graph.edges()],
                   outputs=sorted(graph.outputs))
    else:
        print(f"Configuration '{configuration.name}' is valid: "
              f"{len(graph)} resource(s), {len(graph.edges())} dependency edge(s), "
              f"{len(graph.outputs)} output(s)")
        if args.verbose:
            for rid in graph.topological_order():
                deps = ', '.join(sorted(graph.dependencies(rid)))
                print(f"  {rid}" + (f" <- {deps}" if deps else ''))
    return EXIT_OK


def plan_main(argv: list, registry: Optional[ProviderRegistry] = None) -> int:
    """Handle 'plan' verb: show the change set without applying it."""
    parser = _common_parser('plan', 'Show changes required to reach the configuration')
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Plan deleting every resource in state',
    )
    parser.add_argument(
        '--detailed-exitcode',
        action='store_true',
        help=f'Exit {EXIT_CHANGES} when changes are pending',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    registry = registry or default_registry()
    start = time.time()

    try:
        configuration, graph, settings, state_path = _load(args, registry, require_config=not args.destroy)
        records = StateStore(state_path).load()
        if args.destroy:
            plan = diff_destroy(records)
        else:
            plan = diff(graph, records, create_before_destroy=settings.create_before_destroy)
    except (ReconcileError, ConfigError) as e:
        return _fail('plan', args, e, start)

    if args.json_output:
        _emit_json('plan', True, time.time() - start, state=str(state_path), plan=plan.to_dict())
    else:
        _print_plan(plan, verbose=args.verbose)

    if args.detailed_exitcode and plan.has_changes:
        return EXIT_CHANGES
    return EXIT_OK


def apply_main(argv: list, registry: Optional[ProviderRegistry] = None) -> int:
    """Handle 'apply' verb: diff, execute and resolve outputs."""
    parser = _common_parser('apply', 'Apply configuration changes')
    _add_run_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    registry = registry or default_registry()
    start = time.time()

    try:
        configuration, graph, settings, state_path = _load(args, registry)
        store = StateStore(state_path, lock_timeout=settings.lock_timeout)
        with store:
            records = store.load()
            plan = diff(graph, records, create_before_destroy=settings.create_before_destroy)
            if not args.json_output:
                _print_plan(plan, verbose=args.verbose)
            if plan.has_changes and not args.yes and not _confirm(
                    f"This will apply {plan.summary()} to '{configuration.name}'."):
                return EXIT_FAILURE

            logger.info(f"Applying '{configuration.name}' (state: {state_path})")
            executor = PlanExecutor(graph, store, registry,
                                    workers=settings.workers, timeout=settings.timeout)
            result = _execute(executor, plan)
            if not result.success:
                return _report_run('apply', args, plan, result, start, EXIT_FAILURE)

            try:
                outputs = resolve_outputs(graph.outputs, attributes_by_id(store.records()))
            except OutputError as e:
                return _report_run('apply', args, plan, result, start, EXIT_OUTPUT, error=e)
            store.save_outputs(outputs)
    except (ReconcileError, ConfigError) as e:
        return _fail('apply', args, e, start)

    if args.json_output:
        _emit_json('apply', True, time.time() - start,
                   plan=plan.to_dict(), result=result.to_dict(), outputs=outputs)
    else:
        _print_result('apply', result)
        _print_outputs(outputs)
    return EXIT_OK


def destroy_main(argv: list, registry: Optional[ProviderRegistry] = None) -> int:
    """Handle 'destroy' verb: delete every resource recorded in state."""
    parser = _common_parser('destroy', 'Destroy every resource in state')
    _add_run_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    registry = registry or default_registry()
    start = time.time()

    try:
        _configuration, _graph, settings, state_path = _load(args, registry, require_config=False)
        store = StateStore(state_path, lock_timeout=settings.lock_timeout)
        with store:
            plan = diff_destroy(store.load())
            if not args.json_output:
                _print_plan(plan, verbose=args.verbose)
            if plan.has_changes and not args.yes and not _confirm(
                    f"WARNING: This will destroy {len(plan.entries)} resource(s) "
                    f"recorded in {state_path}.\nThis action cannot be undone."):
                return EXIT_FAILURE

            logger.info(f"Destroying resources in {state_path}")
            executor = PlanExecutor(None, store, registry,
                                    workers=settings.workers, timeout=settings.timeout)
            result = _execute(executor, plan)
            if result.success:
                store.save_outputs({})
    except (ReconcileError, ConfigError) as e:
        return _fail('destroy', args, e, start)

    if args.json_output:
        _emit_json('destroy', result.success, time.time() - start,
                   plan=plan.to_dict(), result=result.to_dict())
    else:
        _print_result('destroy', result)
    return EXIT_OK if result.success else EXIT_FAILURE


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def _print_outputs(outputs: dict) -> None:
    if not outputs:
        return
    print("\nOutputs:")
    for name in sorted(outputs):
        print(f"  {name} = {_format_value(outputs[name])}")


def output_main(argv: list, registry: Optional[ProviderRegistry] = None) -> int:
    """Handle 'output' verb: show outputs saved by the last apply."""
    parser = _common_parser('output', 'Show outputs from the last apply')
    parser.add_argument('name', nargs='?', help='Single output to print')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    registry = registry or default_registry()
    start = time.time()

    try:
        _configuration, _graph, _settings, state_path = _load(args, registry, require_config=False)
        outputs = StateStore(state_path).outputs()
        if args.name is not None:
            if args.name not in outputs:
                raise OutputError(f"Output '{args.name}' not found in state", output=args.name)
            outputs = {args.name: outputs[args.name]}
    except (ReconcileError, ConfigError) as e:
        return _fail('output', args, e, start)

    if args.json_output:
        _emit_json('output', True, time.time() - start, outputs=outputs)
    elif args.name is not None:
        print(_format_value(outputs[args.name]))
    else:
        for name in sorted(outputs):
            print(f"{name} = {_format_value(outputs[name])}")
    return EXIT_OK


def state_main(argv: list, registry: Optional[ProviderRegistry] = None) -> int:
    """Handle 'state' verb: list records or show one."""
    parser = _common_parser('state', 'Inspect recorded state')
    parser.add_argument('action', choices=['list', 'show'])
    parser.add_argument('resource_id', nargs='?', help='Resource id for show')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    registry = registry or default_registry()
    start = time.time()

    try:
        _configuration, _graph, _settings, state_path = _load(args, registry, require_config=False)
        records = StateStore(state_path).load()
        if args.action == 'show':
            if not args.resource_id:
                raise ConfigError("state show requires a resource id")
            if args.resource_id not in records:
                raise StateError("No such resource in state", args.resource_id)
    except (ReconcileError, ConfigError) as e:
        return _fail('state', args, e, start)

    if args.action == 'list':
        if args.json_output:
            _emit_json('state', True, time.time() - start,
                       resources=[records[rid].to_dict() for rid in sorted(records)])
        else:
            for rid in sorted(records):
                print(f"{rid}\t{records[rid].external_id}")
        return EXIT_OK

    record = records[args.resource_id]
    if args.json_output:
        _emit_json('state', True, time.time() - start, resource=record.to_dict())
    else:
        print(json.dumps(record.to_dict(), indent=2, sort_keys=True))
    return EXIT_OK
