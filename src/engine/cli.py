"""CLI handlers for the stack and callback verbs.

Usage:
    stackops stack plan --stack <id> --template <file> [--json-output]
    stackops stack apply --stack <id> (--changeset <cs> | --template <file>) [--dry-run] [--yes]
    stackops stack destroy --stack <id> [--yes]
    stackops stack drift --stack <id>
    stackops stack status [--stack <id>]
    stackops stack recover --stack <id> [--retry-rollback]
    stackops stack discard --stack <id> --changeset <cs>
    stackops callback send --url <url> --request-id <id> --token <tok> --status SUCCESS|FAILED
    stackops callback list --url <url> [--admin-token <tok>]
    stackops callback serve
"""

import argparse
import json
import logging
import signal
import sys
import time

import requests

from common import format_duration
from config import ConfigError, EngineConfig, load_config
from engine.errors import (
    ChangeSetNotFoundError,
    EngineError,
    ProviderError,
    StackLockedError,
    StackNotFoundError,
    StaleChangeSetError,
    TemplateError,
    TemplateFormatError,
)
from engine.gateway import send_callback
from engine.models import ChangeSet, Stack, StackStatus
from engine.orchestrator import Engine
from template import load_template

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_USAGE = 1
EXIT_FAILED = 2
EXIT_TEMPLATE = 3
EXIT_LOCKED = 4

SUCCESS_STATUSES = {StackStatus.CREATE_COMPLETE, StackStatus.UPDATE_COMPLETE, StackStatus.DELETE_COMPLETE}


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all stack verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stackops stack {verb}',
        description=description,
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to stackops.yaml (default: discovered)',
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


def _add_stack_arg(parser: argparse.ArgumentParser, required: bool = True) -> None:
    parser.add_argument(
        '--stack', '-s',
        required=required,
        help='Stack identifier',
    )


def _add_template_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--template', '-t',
        help='Path to a YAML or JSON template',
    )
    parser.add_argument(
        '--template-json',
        help='Inline template JSON',
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


def _load_engine(args, serve_callbacks: bool = True) -> tuple[Engine, EngineConfig]:
    """Load configuration and build the engine.

    Raises:
        ConfigError: If the configuration is invalid
        ProviderError: If a provider kind is unknown
    """
    config = load_config(args.config)
    if config.source:
        logger.debug(f"Using config {config.source}")
    return Engine.from_config(config, serve_callbacks=serve_callbacks), config


def _load_template_arg(args):
    if not args.template and not args.template_json:
        raise TemplateFormatError("specify a template with --template or --template-json")
    return load_template(file_path=args.template, json_str=args.template_json)


def _exit_code_for(error: Exception) -> int:
    if isinstance(error, TemplateError):
        return EXIT_TEMPLATE
    if isinstance(error, StackLockedError):
        return EXIT_LOCKED
    return EXIT_USAGE


def _report_error(error: Exception, json_output: bool) -> int:
    code = getattr(error, 'code', 'E000')
    message = getattr(error, 'message', str(error))
    if json_output:
        print(json.dumps({'success': False, 'error': {'code': code, 'message': message}}, indent=2))
    else:
        print(f"Error: {error}", file=sys.stderr)
    return _exit_code_for(error)


def _emit_json(verb: str, success: bool, duration: float, **payload) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
    }
    output.update(payload)
    print(json.dumps(output, indent=2, default=str))


def _print_changeset(changeset: ChangeSet) -> None:
    summary = changeset.summary()
    print(f"ChangeSet {changeset.changeset_id} for stack '{changeset.stack_id}' "
          f"(base version {changeset.base_version})")
    if not changeset.changes:
        print("  No resource changes")
    for change in changeset.changes:
        action = 'Replace' if change.replacement and change.action.value != 'Delete' else change.action.value
        print(f"  [{change.batch}] {action:<8} {change.logical_id:<24} {change.resource_type:<24} {change.reason}")
    print("Summary: " + ", ".join(f"{k}={v}" for k, v in summary.items()))


def _print_stack(stack: Stack) -> None:
    print(f"Stack {stack.stack_id}: {stack.status.value} (version {stack.version})")
    if stack.status_reason:
        print(f"  Reason: {stack.status_reason}")
    for resource in stack.resources.values():
        print(f"  {resource.logical_id:<24} {resource.type:<24} {resource.status.value:<20} "
              f"{resource.physical_id or '-'}")
    for resource in stack.retired:
        print(f"  {resource.logical_id:<24} {resource.type:<24} {'(retired)':<20} {resource.physical_id or '-'}")
    if stack.outputs:
        print("  Outputs:")
        for name, value in stack.outputs.items():
            print(f"    {name} = {value}")


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N] ").strip().lower()
    return response == 'y'


def _stack_exit_code(stack: Stack) -> int:
    return EXIT_SUCCESS if stack.status in SUCCESS_STATUSES else EXIT_FAILED


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan', 'Compute a changeset for a template')
    _add_stack_arg(parser)
    _add_template_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        engine, _ = _load_engine(args, serve_callbacks=False)
        changeset = engine.plan(args.stack, _load_template_arg(args))
    except (EngineError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.json_output:
        _emit_json('plan', True, time.time() - start, changeset=changeset.to_dict())
    else:
        _print_changeset(changeset)
        print(f"\nApply with: stackops stack apply --stack {args.stack} --changeset {changeset.changeset_id}")
    return EXIT_SUCCESS


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply', 'Execute a changeset (or plan and execute a template)')
    _add_stack_arg(parser)
    _add_template_args(parser)
    parser.add_argument(
        '--changeset',
        help='ChangeSet identifier from a previous plan',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show the changeset without executing it',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt for deletes and replacements',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.changeset and not args.template and not args.template_json:
        print("Error: specify --changeset or a template", file=sys.stderr)
        return EXIT_USAGE

    start = time.time()
    try:
        engine, _ = _load_engine(args)
        if args.changeset:
            changeset = engine.store.load_changeset(args.stack, args.changeset)
        else:
            changeset = engine.plan(args.stack, _load_template_arg(args))
    except (EngineError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.dry_run:
        if args.json_output:
            _emit_json('apply', True, time.time() - start, dry_run=True, changeset=changeset.to_dict())
        else:
            _print_changeset(changeset)
        return EXIT_SUCCESS

    destructive = [c for c in changeset.changes if c.replacement or c.action.value == 'Delete']
    if destructive and not args.yes and not args.json_output:
        _print_changeset(changeset)
        if not _confirm(f"\n{len(destructive)} change(s) delete or replace resources. Continue?"):
            print("Aborted.")
            return EXIT_USAGE

    previous = signal.getsignal(signal.SIGINT)

    def _on_interrupt(signum, frame):
        logger.warning("Interrupt received; finishing in-flight operations, then rolling back")
        engine.cancel(args.stack)

    signal.signal(signal.SIGINT, _on_interrupt)
    try:
        stack = engine.apply(args.stack, changeset.changeset_id)
    except (EngineError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)
    finally:
        signal.signal(signal.SIGINT, previous)

    rc = _stack_exit_code(stack)
    duration = time.time() - start
    if args.json_output:
        _emit_json('apply', rc == EXIT_SUCCESS, duration,
                   changeset_id=changeset.changeset_id, stack=stack.to_dict())
    else:
        _print_stack(stack)
        print(f"\nFinished in {format_duration(duration)}")
    return rc


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('destroy', 'Delete every resource of a stack')
    _add_stack_arg(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        engine, _ = _load_engine(args)
        stack = engine.describe(args.stack)
    except (EngineError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if not args.yes and not args.json_output:
        print(f"\nWARNING: This will delete all {len(stack.resources)} resource(s) of stack '{args.stack}'.")
        print("This action cannot be undone.")
        if not _confirm("Continue?"):
            print("Aborted.")
            return EXIT_USAGE

    start = time.time()
    try:
        stack = engine.destroy(args.stack)
    except (EngineError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    rc = _stack_exit_code(stack)
    if args.json_output:
        _emit_json('destroy', rc == EXIT_SUCCESS, time.time() - start, stack=stack.to_dict())
    else:
        _print_stack(stack)
    return rc


def drift_main(argv: list) -> int:
    """Handle 'stack drift' verb.

    Exit code is 0 even when drift is found; drift is advisory.
    """
    parser = _common_parser('drift', 'Compare provider state with the recorded state')
    _add_stack_arg(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        engine, _ = _load_engine(args, serve_callbacks=False)
        results = engine.detect_drift(args.stack)
    except (EngineError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.json_output:
        _emit_json('drift', True, time.time() - start,
                   drifted=any(r.drifted for r in results),
                   resources=[r.to_dict() for r in results])
        return EXIT_SUCCESS

    for result in results:
        print(f"  {result.logical_id:<24} {result.status:<12} {result.message or ''}")
        for key, diff in sorted(result.differences.items()):
            print(f"      {key}: expected {diff['expected']!r}, actual {diff['actual']!r}")
    drifted = [r.logical_id for r in results if r.drifted]
    print(f"\n{len(drifted)} of {len(results)} resource(s) drifted")
    return EXIT_SUCCESS


def status_main(argv: list) -> int:
    """Handle 'stack status' verb (lists stacks without --stack)."""
    parser = _common_parser('status', 'Show stack status')
    _add_stack_arg(parser, required=False)
    parser.add_argument(
        '--changesets',
        action='store_true',
        help='Also list changesets',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        engine, _ = _load_engine(args, serve_callbacks=False)
        if not args.stack:
            stacks = [engine.describe(sid) for sid in engine.list_stacks()]
            if args.json_output:
                print(json.dumps({'stacks': [
                    {'stack_id': s.stack_id, 'status': s.status.value, 'version': s.version}
                    for s in stacks
                ]}, indent=2))
            else:
                for s in stacks:
                    print(f"  {s.stack_id:<32} {s.status.value:<22} v{s.version}")
                if not stacks:
                    print("No stacks")
            return EXIT_SUCCESS
        stack = engine.describe(args.stack)
        changesets = engine.store.list_changesets(args.stack) if args.changesets else []
    except (EngineError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.json_output:
        output = {'stack': stack.to_dict()}
        if args.changesets:
            output['changesets'] = [
                {'changeset_id': c.changeset_id, 'status': c.status, 'base_version': c.base_version}
                for c in changesets
            ]
        print(json.dumps(output, indent=2, default=str))
    else:
        _print_stack(stack)
        for changeset in changesets:
            print(f"  changeset {changeset.changeset_id} {changeset.status} (base v{changeset.base_version})")
    return EXIT_SUCCESS


def recover_main(argv: list) -> int:
    """Handle 'stack recover' verb."""
    parser = _common_parser('recover', 'Reconcile and finish an interrupted run')
    _add_stack_arg(parser)
    parser.add_argument(
        '--retry-rollback',
        action='store_true',
        help='Retry rollback (or teardown) of a FAILED stack',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        engine, _ = _load_engine(args)
        stack = engine.recover(args.stack, retry_rollback=args.retry_rollback)
    except (EngineError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    rc = EXIT_FAILED if stack.status == StackStatus.FAILED else EXIT_SUCCESS
    if args.json_output:
        _emit_json('recover', rc == EXIT_SUCCESS, time.time() - start, stack=stack.to_dict())
    else:
        _print_stack(stack)
    return rc


def discard_main(argv: list) -> int:
    """Handle 'stack discard' verb."""
    parser = _common_parser('discard', 'Discard a planned changeset')
    _add_stack_arg(parser)
    parser.add_argument(
        '--changeset',
        required=True,
        help='ChangeSet identifier',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        engine, _ = _load_engine(args, serve_callbacks=False)
        changeset = engine.discard(args.stack, args.changeset)
    except (ChangeSetNotFoundError, StaleChangeSetError, StackNotFoundError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.json_output:
        print(json.dumps({'changeset_id': changeset.changeset_id, 'status': changeset.status}, indent=2))
    else:
        print(f"ChangeSet {changeset.changeset_id} discarded")
    return EXIT_SUCCESS


STACK_VERBS = {
    'plan': (plan_main, 'Compute a changeset for a template'),
    'apply': (apply_main, 'Execute a changeset'),
    'destroy': (destroy_main, 'Delete all resources of a stack'),
    'drift': (drift_main, 'Detect drift between recorded and actual state'),
    'status': (status_main, 'Show stack status'),
    'recover': (recover_main, 'Finish an interrupted run'),
    'discard': (discard_main, 'Discard a planned changeset'),
}


def stack_main(argv: list) -> int:
    """Dispatch 'stack' noun to verb-specific handler."""
    if not argv or argv[0].startswith('-'):
        print("Usage: stackops stack <action> [options]")
        print()
        print("Actions:")
        for verb, (_, desc) in STACK_VERBS.items():
            print(f"  {verb:<10} {desc}")
        print()
        print("Run 'stackops stack <action> --help' for action-specific options.")
        return EXIT_USAGE if not argv else EXIT_SUCCESS

    verb = argv[0]
    if verb not in STACK_VERBS:
        print(f"Error: Unknown stack action '{verb}'")
        print(f"Available actions: {', '.join(STACK_VERBS)}")
        return EXIT_USAGE
    handler, _ = STACK_VERBS[verb]
    return handler(argv[1:])


# -- callback noun ------------------------------------------------------------

def send_main(argv: list) -> int:
    """Handle 'callback send': answer a provider request from a shell script."""
    parser = argparse.ArgumentParser(
        prog='stackops callback send',
        description='Resolve a pending custom provider request',
    )
    parser.add_argument('--url', required=True, help='Callback endpoint (the request responseURL)')
    parser.add_argument('--request-id', required=True, help='Request identifier')
    parser.add_argument('--token', required=True, help='Callback token from the request')
    parser.add_argument('--status', required=True, choices=['SUCCESS', 'FAILED'], help='Outcome')
    parser.add_argument('--physical-id', help='Physical id of the created resource')
    parser.add_argument('--output', action='append', default=[], metavar='KEY=VALUE',
                        help='Output attribute (repeatable)')
    parser.add_argument('--reason', help='Failure reason')
    parser.add_argument('--insecure', '-k', action='store_true', help='Skip TLS verification')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, False)

    output_data = {}
    for item in args.output:
        if '=' not in item:
            print(f"Error: --output expects KEY=VALUE, got '{item}'", file=sys.stderr)
            return EXIT_USAGE
        key, value = item.split('=', 1)
        output_data[key] = value

    try:
        status, body = send_callback(
            args.url, args.request_id, args.token, args.status,
            physical_id=args.physical_id,
            output_data=output_data,
            reason=args.reason,
            verify=not args.insecure,
        )
    except ProviderError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    print(json.dumps(body, indent=2))
    return EXIT_SUCCESS if status == 202 else EXIT_FAILED


def list_main(argv: list) -> int:
    """Handle 'callback list': show pending requests of a running engine."""
    parser = argparse.ArgumentParser(
        prog='stackops callback list',
        description='List pending custom provider requests',
    )
    parser.add_argument('--url', required=True, help='Engine base URL (e.g. https://host:44480)')
    parser.add_argument('--admin-token', default='', help='Admin token for /callbacks')
    parser.add_argument('--insecure', '-k', action='store_true', help='Skip TLS verification')
    args = parser.parse_args(argv)

    headers = {'Authorization': f'Bearer {args.admin_token}'} if args.admin_token else {}
    try:
        resp = requests.get(f"{args.url.rstrip('/')}/callbacks", headers=headers,
                            timeout=10, verify=not args.insecure)
    except requests.exceptions.RequestException as e:
        print(f"Error: cannot reach {args.url}: {e}", file=sys.stderr)
        return EXIT_USAGE

    try:
        body = resp.json()
    except ValueError:
        print(f"Error: HTTP {resp.status_code}: {resp.text}", file=sys.stderr)
        return EXIT_FAILED
    print(json.dumps(body, indent=2))
    return EXIT_SUCCESS if resp.status_code == 200 else EXIT_FAILED


def serve_main(argv: list) -> int:
    """Handle 'callback serve': run the callback server (and drift monitor) in the foreground."""
    parser = argparse.ArgumentParser(
        prog='stackops callback serve',
        description='Run the callback endpoint in the foreground',
    )
    parser.add_argument('--config', '-c', help='Path to stackops.yaml (default: discovered)')
    parser.add_argument('--port', '-p', type=int, help='Override callback.port')
    parser.add_argument('--bind', '-b', help='Override callback.bind')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, False)

    try:
        config = load_config(args.config)
        if args.port is not None:
            config.callback.port = args.port
        if args.bind:
            config.callback.bind = args.bind
        engine = Engine.from_config(config)
    except (ConfigError, EngineError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    monitor = None
    if config.drift_interval > 0:
        monitor = engine.start_drift_monitor(config.drift_interval, _log_drift)

    server = engine.server_manager.server
    try:
        server.start()
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    engine.gateway.start_sweeper()
    try:
        server.serve_forever()
    finally:
        engine.gateway.stop_sweeper()
        if monitor is not None:
            monitor.stop()
    return EXIT_SUCCESS


def _log_drift(stack_id: str, results: list) -> None:
    drifted = [r.logical_id for r in results if r.drifted]
    if drifted:
        logger.warning(f"[drift] {stack_id}: {', '.join(drifted)} drifted")


CALLBACK_VERBS = {
    'send': (send_main, 'Resolve a pending request (for shell providers)'),
    'list': (list_main, 'List pending requests of a running engine'),
    'serve': (serve_main, 'Run the callback endpoint in the foreground'),
}


def callback_main(argv: list) -> int:
    """Dispatch 'callback' noun to verb-specific handler."""
    if not argv or argv[0].startswith('-'):
        print("Usage: stackops callback <action> [options]")
        print()
        print("Actions:")
        for verb, (_, desc) in CALLBACK_VERBS.items():
            print(f"  {verb:<10} {desc}")
        return EXIT_USAGE if not argv else EXIT_SUCCESS

    verb = argv[0]
    if verb not in CALLBACK_VERBS:
        print(f"Error: Unknown callback action '{verb}'")
        print(f"Available actions: {', '.join(CALLBACK_VERBS)}")
        return EXIT_USAGE
    handler, _ = CALLBACK_VERBS[verb]
    return handler(argv[1:])
