# -*- coding: utf-8 -
#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

import argparse
import copy
import os
import shlex
import sys
import tempfile
import textwrap

from cgidispatch import __version__
from cgidispatch.errors import ConfigError

KNOWN_SETTINGS = []

LOAD_BALANCE_POLICIES = ("no", "standard", "multiple")


def make_settings(ignore=None):
    settings = {}
    ignore = ignore or ()
    for s in KNOWN_SETTINGS:
        setting = s()
        if setting.name in ignore:
            continue
        settings[setting.name] = setting.copy()
    return settings


class Config(object):

    def __init__(self, usage=None, prog=None):
        self.settings = make_settings()
        self.usage = usage
        self.prog = prog or os.path.basename(sys.argv[0])

    def __str__(self):
        lines = []
        kmax = max(len(k) for k in self.settings)
        for k in sorted(self.settings):
            v = self.settings[k].value
            lines.append("{k:{kmax}} = {v}".format(k=k, v=v, kmax=kmax))
        return "\n".join(lines)

    def __getattr__(self, name):
        if name not in self.settings:
            raise AttributeError("No configuration setting for: %s" % name)
        return self.settings[name].get()

    def __setattr__(self, name, value):
        if name != "settings" and name in self.settings:
            raise AttributeError("Invalid access!")
        super().__setattr__(name, value)

    def set(self, name, value):
        if name not in self.settings:
            raise AttributeError("No configuration setting for: %s" % name)
        self.settings[name].set(value)

    def get_cmd_args_from_env(self):
        if 'CGIDISPATCH_CMD_ARGS' in os.environ:
            return shlex.split(os.environ['CGIDISPATCH_CMD_ARGS'])
        return []

    def parser(self):
        kwargs = {
            "usage": self.usage,
            "prog": self.prog
        }
        parser = argparse.ArgumentParser(**kwargs)
        parser.add_argument("-v", "--version",
                            action="version", default=argparse.SUPPRESS,
                            version="%(prog)s (version " + __version__ + ")\n",
                            help="show program's version number and exit")

        keys = sorted(self.settings, key=self.settings.__getitem__)
        for k in keys:
            self.settings[k].add_option(parser)

        return parser

    def load_file(self, filename):
        """Read settings from a Python config file.

        Module level names matching a setting are applied; anything else
        in the file is ignored.
        """
        cfg = {
            "__builtins__": __builtins__,
            "__name__": "__config__",
            "__file__": filename,
            "__doc__": None,
            "__package__": None
        }
        try:
            with open(filename, "rb") as f:
                code = compile(f.read(), filename, "exec")
            exec(code, cfg, cfg)
        except Exception as e:
            raise ConfigError("Failed to read config file %s: %s" % (filename, e))

        for k, v in cfg.items():
            if k not in self.settings:
                continue
            try:
                self.set(k.lower(), v)
            except (TypeError, ValueError) as e:
                raise ConfigError("Invalid value for %s: %s (%s)" % (k, v, e))

    def load_args(self, args):
        for k, v in vars(args).items():
            if v is None or k not in self.settings:
                continue
            self.set(k.lower(), v)


class SettingMeta(type):
    def __new__(cls, name, bases, attrs):
        super_new = super().__new__
        parents = [b for b in bases if isinstance(b, SettingMeta)]
        if not parents:
            return super_new(cls, name, bases, attrs)

        attrs["order"] = len(KNOWN_SETTINGS)
        attrs["validator"] = staticmethod(attrs["validator"])

        new_class = super_new(cls, name, bases, attrs)
        new_class.fmt_desc(attrs.get("desc", ""))
        KNOWN_SETTINGS.append(new_class)
        return new_class

    def fmt_desc(cls, desc):
        desc = textwrap.dedent(desc).strip()
        setattr(cls, "desc", desc)
        setattr(cls, "short", desc.splitlines()[0])


class Setting(object):
    name = None
    value = None
    section = None
    cli = None
    validator = None
    type = None
    meta = None
    action = None
    default = None
    short = None
    desc = None
    nargs = None
    const = None

    def __init__(self):
        if self.default is not None:
            self.set(self.default)

    def add_option(self, parser):
        if not self.cli:
            return
        args = tuple(self.cli)

        help_txt = "%s [%s]" % (self.short, self.default)
        help_txt = help_txt.replace("%", "%%")

        kwargs = {
            "dest": self.name,
            "action": self.action or "store",
            "type": self.type or str,
            "default": None,
            "help": help_txt
        }

        if self.meta is not None:
            kwargs['metavar'] = self.meta

        if kwargs["action"] != "store":
            kwargs.pop("type")

        if self.nargs is not None:
            kwargs["nargs"] = self.nargs

        if self.const is not None:
            kwargs["const"] = self.const

        parser.add_argument(*args, **kwargs)

    def copy(self):
        return copy.copy(self)

    def get(self):
        return self.value

    def set(self, val):
        if not callable(self.validator):
            raise TypeError('Invalid validator: %s' % self.name)
        self.value = self.validator(val)

    def __lt__(self, other):
        return (self.section == other.section and
                self.order < other.order)
    __cmp__ = __lt__

    def __repr__(self):
        return "<%s.%s object at %x with value %r>" % (
            self.__class__.__module__,
            self.__class__.__name__,
            id(self),
            self.value,
        )


Setting = SettingMeta('Setting', (Setting,), {})


def validate_bool(val):
    if val is None:
        return

    if isinstance(val, bool):
        return val
    if not isinstance(val, str):
        raise TypeError("Invalid type for casting: %s" % val)
    if val.lower().strip() == "true":
        return True
    elif val.lower().strip() == "false":
        return False
    else:
        raise ValueError("Invalid boolean: %s" % val)


def validate_pos_int(val):
    if not isinstance(val, int):
        val = int(val, 0)
    else:
        # Booleans are ints!
        val = int(val)
    if val < 0:
        raise ValueError("Value must be positive: %s" % val)
    return val


def validate_pos_float(val):
    if isinstance(val, bool):
        raise TypeError("Not a number: %s" % val)
    val = float(val)
    if val < 0:
        raise ValueError("Value must be positive: %s" % val)
    return val


def validate_string(val):
    if val is None:
        return None
    if not isinstance(val, str):
        raise TypeError("Not a string: %s" % val)
    return val.strip()


def validate_path(val):
    val = validate_string(val)
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(val))


def validate_loadbalance(val):
    val = validate_string(val)
    if val not in LOAD_BALANCE_POLICIES:
        raise ConfigError("Invalid load balancing policy: %r (expected one of %s)"
                          % (val, ", ".join(LOAD_BALANCE_POLICIES)))
    return val


def default_state_dir():
    return os.path.join(tempfile.gettempdir(), "cgidispatch-%d" % os.getuid())


class ConfigFile(Setting):
    name = "config"
    section = "Config File"
    cli = ["-c", "--config"]
    meta = "CONFIG"
    validator = validate_string
    default = None
    desc = """\
        The path to a Python configuration file.

        Module level names matching a setting name are read from the file.
        Command line options and ``CGIDISPATCH_CMD_ARGS`` take precedence
        over values from the file.
        """


class Registry(Setting):
    name = "registry"
    section = "Registry"
    cli = ["--registry"]
    meta = "FILE"
    validator = validate_path
    default = os.path.join(default_state_dir(), "registry")
    desc = """\
        The file holding the table of registered workers.

        A sidecar lock file named ``<registry>.lock`` is created next to it.
        All dispatchers, workers and fleet commands of one installation must
        agree on this path.
        """


class LockTimeout(Setting):
    name = "lock_timeout"
    section = "Registry"
    cli = ["--lock-timeout"]
    meta = "SECONDS"
    validator = validate_pos_float
    type = float
    default = 10.0
    desc = """\
        Seconds to wait for the registry lock before giving up.

        An operation that cannot take the lock in time fails loudly rather
        than skipping the registry update.
        """


class SocketDir(Setting):
    name = "socket_dir"
    section = "Naming"
    cli = ["--socket-dir"]
    meta = "DIR"
    validator = validate_path
    default = default_state_dir()
    desc = """\
        Directory holding the Unix sockets workers listen on.

        A port name resolves to ``<socket_dir>/<port>@localhost``.
        """


class ConnectTimeout(Setting):
    name = "connect_timeout"
    section = "Dispatching"
    cli = ["--connect-timeout"]
    meta = "SECONDS"
    validator = validate_pos_float
    type = float
    default = 5.0
    desc = """\
        How long to keep retrying a connection to a worker.

        Must cover the startup time of a freshly spawned worker, but stay
        short enough that the end user's request does not hang.
        """


class ConnectBackoff(Setting):
    name = "connect_backoff"
    section = "Dispatching"
    cli = ["--connect-backoff"]
    meta = "SECONDS"
    validator = validate_pos_float
    type = float
    default = 0.05
    desc = """\
        Initial delay between connection attempts.

        The delay doubles after each failed attempt, up to one second.
        """


class ServerTimeout(Setting):
    name = "server_timeout"
    section = "Worker Processes"
    cli = ["--server-timeout"]
    meta = "MS"
    validator = validate_pos_int
    type = int
    default = 0
    desc = """\
        Idle time in milliseconds after which a worker terminates itself.

        Passed to spawned workers as ``-servertimeout``. ``0`` keeps the
        worker's own default.
        """


class LoadBalance(Setting):
    name = "loadbalance"
    section = "Worker Processes"
    cli = ["--loadbalance"]
    meta = "POLICY"
    validator = validate_loadbalance
    default = "no"
    desc = """\
        How new sessions are distributed over worker instances.

        * ``no`` - one instance per program, always reused.
        * ``standard`` - reuse an idle instance, start another one when all
          instances are busy.
        * ``multiple`` - start a fresh instance for every new session.
        """


class MaxBalanceDepth(Setting):
    name = "max_balance_depth"
    section = "Worker Processes"
    cli = ["--max-balance-depth"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 3
    desc = """\
        Maximum number of extra instances tried for one new session.

        When every instance reached is busy, the session is bound to the
        last one and its request waits there.
        """


class SymmetricCoordinates(Setting):
    name = "symmetric_coordinates"
    section = "Forms"
    cli = ["--symmetric-coordinates"]
    validator = validate_bool
    action = "store_true"
    default = False
    desc = """\
        Expand ``name.y`` image-button fields like ``name.x`` fields.

        By default ``name.x=v`` yields ``x=v`` and ``name=v`` while
        ``name.y=v`` only yields ``y=v``.
        """


class Loglevel(Setting):
    name = "loglevel"
    section = "Logging"
    cli = ["--log-level"]
    meta = "LEVEL"
    validator = validate_string
    default = "info"
    desc = """\
        The granularity of Error log outputs.

        Valid level names are:

        * ``'debug'``
        * ``'info'``
        * ``'warning'``
        * ``'error'``
        * ``'critical'``
        """


class ErrorLog(Setting):
    name = "errorlog"
    section = "Logging"
    cli = ["--error-logfile", "--log-file"]
    meta = "FILE"
    validator = validate_string
    default = '-'
    desc = """\
        The Error log file to write to.

        Using ``'-'`` for FILE makes cgidispatch log to stderr. Standard
        output is never used for logging since it carries the response.
        """


class LogConfig(Setting):
    name = "logconfig"
    section = "Logging"
    cli = ["--log-config"]
    meta = "FILE"
    validator = validate_string
    default = None
    desc = """\
        The log config file to use.

        cgidispatch uses the standard Python logging module's Configuration
        file format.
        """


class ProcName(Setting):
    name = "proc_name"
    section = "Process Naming"
    cli = ["-n", "--name"]
    meta = "STRING"
    validator = validate_string
    default = None
    desc = """\
        A base to use with setproctitle for process naming.

        Worker processes are named after their port when this is unset.
        Requires the ``setproctitle`` module.
        """
