#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
cgidispatch - CGI front end and fleet administration

``submit`` is run by the web server once per request; every other command
operates on all registered workers.
"""

import argparse
import os
import sys

from cgidispatch.config import Config, LOAD_BALANCE_POLICIES
from cgidispatch.dispatcher import Dispatcher
from cgidispatch.errors import ConfigError, DispatchError
from cgidispatch.fleet import COMMANDS, Fleet
from cgidispatch.glogging import Logger

USAGE = "%(prog)s [OPTIONS] COMMAND [ARGS]"

EPILOG = """
Commands:
%s
  submit URL SEED PROGRAM [-servertimeout MS] [-loadbalance no|standard|multiple]
                          [-multipleservers]
                        Dispatch the current CGI request to a worker
""" % "\n".join("  %-22s%s" % (c, d) for c, d in sorted(COMMANDS.items()))


def submit_parser(prog):
    parser = argparse.ArgumentParser(prog="%s submit" % prog, add_help=False)
    parser.add_argument("url")
    parser.add_argument("seed")
    parser.add_argument("program")
    parser.add_argument("-servertimeout", type=int, default=None,
                        metavar="MS")
    parser.add_argument("-loadbalance", choices=LOAD_BALANCE_POLICIES,
                        default=None)
    parser.add_argument("-multipleservers", action="store_true")
    return parser


def load_config(argv=None, prog=None):
    """Build the configuration: defaults, config file, environment, argv.

    Returns (cfg, parser, command, command_args).
    """
    cfg = Config(USAGE, prog=prog)
    parser = cfg.parser()
    parser.formatter_class = argparse.RawDescriptionHelpFormatter
    parser.epilog = EPILOG
    parser.add_argument("command", choices=sorted(COMMANDS) + ["submit"])
    parser.add_argument("args", nargs=argparse.REMAINDER)

    args = parser.parse_args(argv)
    env_args = cfg.get_cmd_args_from_env()

    config_file = args.config
    if config_file is None and env_args:
        env_ns, _rest = cfg.parser().parse_known_args(env_args)
        config_file = env_ns.config
    if config_file:
        cfg.load_file(config_file)

    try:
        if env_args:
            env_ns, _rest = cfg.parser().parse_known_args(env_args)
            cfg.load_args(env_ns)
        cfg.load_args(args)
    except (ConfigError, TypeError, ValueError) as e:
        parser.error(str(e))
    return cfg, parser, args.command, args.args


def run_submit(cfg, log, prog, argv, stdin=None, stdout=None):
    """Dispatch the CGI request of this process; streams default to stdio."""
    args = submit_parser(prog).parse_args(argv)
    if args.multipleservers:
        cfg.set("loadbalance", "multiple")
    elif args.loadbalance is not None:
        cfg.set("loadbalance", args.loadbalance)

    server_args = []
    timeout = args.servertimeout or cfg.server_timeout
    if timeout:
        server_args = ["-servertimeout", str(timeout)]

    dispatcher = Dispatcher(cfg, log, args.program, args.seed, args.url,
                            server_args=server_args)
    if stdin is None:
        stdin = sys.stdin.buffer
    if stdout is None:
        stdout = sys.stdout.buffer
    return dispatcher.dispatch(os.environ, stdin, stdout)


def run_command(cfg, log, parser, command, args):
    fleet = Fleet(cfg, log=log)
    if command == "stopscript":
        if len(args) != 1:
            parser.error("stopscript takes exactly one PROGRAM argument")
        lines = fleet.stopscript(os.path.abspath(args[0]))
    else:
        if args:
            parser.error("%s takes no arguments" % command)
        lines = getattr(fleet, command)()

    print("\n".join(lines))
    return 0


def main(argv=None, stdin=None, stdout=None):
    """Main entry point for the cgidispatch CLI.

    ``stdin`` and ``stdout`` are the binary streams of a ``submit``.
    """
    prog = os.path.basename(sys.argv[0]) or "cgidispatch"
    try:
        cfg, parser, command, args = load_config(argv, prog=prog)
        log = Logger(cfg)
    except (DispatchError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        if command == "submit":
            return run_submit(cfg, log, prog, args, stdin, stdout)
        return run_command(cfg, log, parser, command, args)
    except DispatchError as e:
        log.error("%s failed: %s", command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == '__main__':
    sys.exit(main())
