"""
Command line front end.

    cname-failover setup              create records + initial state
    cname-failover start | stop       detached monitor lifecycle
    cname-failover run                monitor in the foreground
    cname-failover switch backup      manual switch
    cname-failover status             state, liveness, live DNS, probes
    cname-failover cleanup            remove records + state
    cname-failover validate           check configuration only
"""

import argparse
import json
import sys

from .config import Settings
from .errors import ConcurrentStartRejected, ConfigError, OperationResult, Outcome
from .operations import FailoverController
from .state import Side

# Marker, ANSI colour and exit code per outcome
OUTCOMES = {
    Outcome.SUCCESS: ('✓', '\033[92m', 0),
    Outcome.FATAL: ('✗', '\033[91m', 1),
    Outcome.RETRYABLE: ('⚠', '\033[93m', 2),
}
RESET = '\033[0m'

EXIT_CODES = {outcome: code for outcome, (_, _, code) in OUTCOMES.items()}


def say(outcome: Outcome, text: str):
    mark, color, _ = OUTCOMES[outcome]
    if sys.stdout.isatty():
        mark = f"{color}{mark}{RESET}"
    print(f"  {mark}  {text}")


def report(result: OperationResult) -> int:
    text = result.message
    if result.outcome == Outcome.RETRYABLE:
        text += " (retryable)"
    say(result.outcome, text)
    return EXIT_CODES[result.outcome]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='cname-failover', description='CNAME-based DNS failover')
    parser.add_argument('--env-file', default=None, help='Path to a .env file (default: ./.env)')
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('setup', help='Create host records, the alias and the initial state')
    sub.add_parser('start', help='Start the monitor in the background')
    sub.add_parser('stop', help='Stop the background monitor')
    sub.add_parser('run', help='Run the monitor in the foreground')
    switch = sub.add_parser('switch', help='Point the alias at a side now')
    switch.add_argument('side', choices=[s.value for s in Side])
    sub.add_parser('status', help='Show state, monitor liveness and live DNS')
    sub.add_parser('cleanup', help='Remove managed records and state')
    sub.add_parser('validate', help='Validate configuration')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env(args.env_file)
        settings.validate()
    except ConfigError as e:
        say(Outcome.FATAL, f"Configuration invalid: {e}")
        return 1

    if args.command == 'validate':
        try:
            cfg = settings.failover_config()
            cfg.validate()
        except ConfigError as e:
            say(Outcome.FATAL, f"Configuration invalid: {e}")
            return 1
        say(Outcome.SUCCESS, "Configuration valid")
        print(json.dumps({'provider': settings.provider, **cfg.to_dict()}, indent=2))
        return 0

    controller = FailoverController(settings)

    if args.command == 'run':
        try:
            controller.monitor().run()
        except ConcurrentStartRejected as e:
            say(Outcome.FATAL, str(e))
            return 1
        except ConfigError as e:
            say(Outcome.FATAL, str(e))
            return 1
        return 0

    if args.command == 'setup':
        return report(controller.setup())
    if args.command == 'start':
        return report(controller.start())
    if args.command == 'stop':
        return report(controller.stop())
    if args.command == 'switch':
        return report(controller.manual_switch(Side(args.side)))
    if args.command == 'cleanup':
        return report(controller.cleanup())
    if args.command == 'status':
        result = controller.status()
        code = report(result)
        if result.ok:
            print(json.dumps(result.data, indent=2))
        return code
    return 1


if __name__ == '__main__':
    sys.exit(main())
