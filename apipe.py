# -*- coding: UTF-8 -*-
r"""\
apipe runs anonymous pipes of child processes, like ``a | b | c`` in the
shell. A pipe is built one command at a time, or parsed from a string, and
then each stage is started with its standard input connected to the standard
output of the stage before it. The standard output of the last stage is
captured and returned as an :class:`Output`.

Stages run one after another. Each child is awaited before the next one is
started, and the data in between them sits in the OS pipe buffer. That keeps
the protocol simple, but a stage that writes more than the pipe buffer holds
(64 KB on Linux) will block forever, because nothing reads its output until it
exits.

Examples
--------

Parse a pipe from a string and capture its output:

>>> from apipe import Command, CommandPipe
>>> pipe = CommandPipe.from_string(r'echo "This is a test." | grep -Eo \w\w\sa[^.]*')
>>> pipe.spawn_with_output()
Output(status=0, stdout=b'is a test\n', stderr=b'')

Build the same kind of pipe with method calls:

>>> pipe = CommandPipe()
>>> pipe.add_command("echo").arg("hi").add_command("sed").args(["s/i/o/"])
CommandPipe(Command('echo', 'hi'), Command('sed', 's/i/o/'))
>>> pipe.read()
'ho'

Or with the ``|`` operator:

>>> (Command("echo", "hi") | Command("sed", "s/i/o/")).read()
'ho'

A non-zero exit status is not an error. It's reported in the output:

>>> CommandPipe(Command("false")).spawn_with_output()
Output(status=1, stdout=b'', stderr=b'')
"""  # noqa: E501

from collections import namedtuple
import logging
import os
from pathlib import PurePath
import shlex
import subprocess
import threading

logger = logging.getLogger(__name__)

PIPE_DELIMITER = "|"
QUOTES = "'\""

# Stage states.
PENDING = 0
STARTED = 1
STDOUT_TAKEN = 2
REAPED = 3

STATE_NAMES = {
    PENDING: "pending",
    STARTED: "started",
    STDOUT_TAKEN: "stdout_taken",
    REAPED: "reaped",
}

# Environment overrides.
ENV = "env"
ENV_REMOVE = "env_remove"


class PipeError(Exception):
    r"""The base class of every error raised while building a pipe, running
    it, or collecting its output."""


class ParseError(PipeError):
    r"""Raised when a command or a pipe description can't be parsed. The
    ``text`` field holds the whole input, and ``segment`` holds the part that
    failed.

    >>> CommandPipe.from_string("echo hi || cat")
    Traceback (most recent call last):
    ...
    apipe.ParseError: Could not parse segment '' of pipe 'echo hi || cat': empty command
    """  # noqa: E501

    def __init__(self, text, segment, reason):
        PipeError.__init__(self, text, segment, reason)
        self.text = text
        self.segment = segment
        self.reason = reason

    def __str__(self):
        if self.segment == self.text:
            return "Could not parse command {0!r}: {1}".format(
                self.text, self.reason
            )
        return "Could not parse segment {0!r} of pipe {1!r}: {2}".format(
            self.segment, self.text, self.reason
        )


class ExecutionError(PipeError):
    r"""The base class of errors raised when a stage of a pipe can't be run.
    The ``index`` and ``program`` fields identify the stage, and ``cause`` is
    the underlying :class:`OSError`."""

    action = "run"

    def __init__(self, index, program, cause):
        PipeError.__init__(self, index, program, cause)
        self.index = index
        self.program = program
        self.cause = cause
        self.errno = cause.errno

    def __str__(self):
        return "Failed to {0} stage {1} ({2!r}): {3}".format(
            self.action, self.index, self.program, self.cause
        )


class ProcessStartError(ExecutionError):
    r"""Raised by :func:`CommandPipe.spawn` when the OS can't start a stage,
    for example because the program doesn't exist. Stages after the failing
    one are never started.

    >>> CommandPipe(Command("nonexistent_program_abc123")).spawn()
    Traceback (most recent call last):
    ...
    apipe.ProcessStartError: Failed to start stage 0 ('nonexistent_program_abc123'): [Errno 2] No such file or directory: 'nonexistent_program_abc123'
    """  # noqa: E501

    action = "start"


class ProcessWaitError(ExecutionError):
    r"""Raised when a started stage can't be awaited, or its output can't be
    collected. A child that exits with a non-zero status does not raise
    this."""

    action = "wait on"


class NoActiveProcess(PipeError):
    r"""Raised by :func:`CommandPipe.output` when there's nothing to collect,
    because the pipe has not been spawned.

    >>> CommandPipe(Command("true")).output()
    Traceback (most recent call last):
    ...
    apipe.NoActiveProcess: no process has been run in this pipe
    """

    def __init__(self, message="no process has been run in this pipe"):
        PipeError.__init__(self, message)


class Output(namedtuple("Output", ["status", "stdout", "stderr"])):
    r"""The return type of :func:`CommandPipe.output`. It carries the exit
    ``status`` of the last stage, the bytes it wrote to ``stdout``, and any
    ``stderr`` bytes captured with :func:`CommandPipe.stderr_capture`. Streams
    that produced nothing are ``b""``, never ``None``.

    >>> output = CommandPipe(Command("true")).spawn_with_output()
    >>> output
    Output(status=0, stdout=b'', stderr=b'')
    >>> output.success
    True
    """

    __slots__ = ()

    @property
    def success(self):
        return self.status == 0


class Command:
    r"""One stage of a pipe: a program and its arguments. Nothing is checked
    or resolved until the command is spawned. The program can be a bare name,
    which is looked up in the ``PATH``, or a path.

    >>> Command("grep", "-v").arg("two words")
    Command('grep', '-v', 'two words')

    Once a :class:`CommandPipe` has spawned a command, its arguments can't be
    changed anymore.
    """

    def __init__(self, program, *args):
        self._program = program
        self._args = list(args)
        self._dir = None
        self._env_ops = []
        self._spawned = False

    @classmethod
    def parse(cls, text):
        r"""Parse a single command from a string. Words are separated by
        whitespace, and single or double quotes keep words together.
        Backslashes are not special, so they're kept as-is.

        >>> Command.parse(r'grep -Eo "two words" \w+')
        Command('grep', '-Eo', 'two words', '\\w+')

        Raise :class:`ParseError` if the text is empty, or if a quote is never
        closed.
        """
        return parse_command(text, text)

    @property
    def program(self):
        return self._program

    @property
    def arguments(self):
        return tuple(self._args)

    def arg(self, value):
        r"""Append one argument. The value is passed to the program as-is,
        without splitting."""
        self._check_not_spawned()
        self._args.append(value)
        return self

    def args(self, values):
        r"""Append each of the given arguments, in order."""
        self._check_not_spawned()
        if is_unicode(values) or isinstance(values, (bytes, bytearray)):
            raise TypeError("Not a valid args parameter: " + repr(values))
        self._args.extend(values)
        return self

    def dir(self, path):
        r"""Set the working directory of the child. Relative program paths
        like ``./foo.sh`` are still interpreted relative to the parent's
        working directory.

        >>> (Command("pwd").dir("/") | Command("cat")).read()
        '/'
        """
        self._check_not_spawned()
        self._dir = path
        return self

    def env(self, name, val):
        r"""Set an environment variable for the child. Everything else is
        inherited from the parent.

        >>> CommandPipe(Command("sh", "-c", "echo $FOO").env("FOO", "bar")).read()
        'bar'
        """
        self._check_not_spawned()
        self._env_ops.append((ENV, name, val))
        return self

    def env_remove(self, name):
        r"""Unset an inherited environment variable for the child."""
        self._check_not_spawned()
        self._env_ops.append((ENV_REMOVE, name))
        return self

    def argv(self):
        r"""Return the command list that will be passed to :class:`Popen`."""
        prog = stringify_with_dot_if_path(self._program)
        if self._dir is not None:
            prog = maybe_canonicalize_exe_path(os.fsdecode(prog))
        return [prog] + [stringify_if_path(arg) for arg in self._args]

    def _child_env(self):
        if not self._env_ops:
            return None
        env = os.environ.copy()
        for op in self._env_ops:
            # Windows needs special handling of env var names.
            name = convert_env_var_name(op[1])
            if op[0] == ENV:
                env[name] = stringify_if_path(op[2])
            else:
                env.pop(name, None)
        return env

    def _check_not_spawned(self):
        if self._spawned:
            raise RuntimeError("Command {0!r} has already been spawned.".format(self))

    # An unspawned duplicate, so that two pipes never share a stage.
    def _copy(self):
        command = Command(self._program, *self._args)
        command._dir = self._dir
        command._env_ops = list(self._env_ops)
        return command

    def _key(self):
        return (self._program, self._args, self._dir, self._env_ops)

    def __eq__(self, other):
        if not isinstance(other, Command):
            return NotImplemented
        return self._key() == other._key()

    __hash__ = None

    def __or__(self, other):
        if not isinstance(other, Command):
            return NotImplemented
        return CommandPipe(self, other)

    def __repr__(self):
        args_str = ", ".join(repr(x) for x in [self._program] + self._args)
        ret = "Command({0})".format(args_str)
        if self._dir is not None:
            ret += ".dir({0!r})".format(self._dir)
        for op in self._env_ops:
            ret += ".{0}({1})".format(op[0], ", ".join(repr(x) for x in op[1:]))
        return ret

    def __str__(self):
        words = [stringify_with_dot_if_path(self._program)] + self._args
        return " ".join(shlex.quote(os.fsdecode(word)) for word in words)


class CommandPipe:
    r"""An ordered list of :class:`Command` stages, and the machinery to run
    them with each stage's standard output feeding the next stage's standard
    input.

    >>> pipe = CommandPipe(Command("echo", "hi"))
    >>> pipe = pipe | Command("sed", "s/i/o/")
    >>> pipe.spawn_with_output().stdout
    b'ho\n'

    The pipe owns at most one child process at a time: the last stage that
    was started and not yet collected by :func:`output`. Using the pipe in a
    ``with`` statement, or calling :func:`close`, releases that child if the
    output is never collected.
    """

    def __init__(self, *commands):
        self._stages = []
        self._states = []
        self._stderr_capture = False
        self._active = None
        self._active_index = None
        self._stderr_reader = None
        self._output = None
        for command in commands:
            self.add_command(command)

    @classmethod
    def from_string(cls, text):
        r"""Parse a pipe from a string of commands separated by ``|``. Each
        command is parsed with :func:`Command.parse`, and a ``|`` inside
        quotes doesn't split anything.

        >>> CommandPipe.from_string("cat notes.txt | grep 'a|b' | wc -l")
        CommandPipe(Command('cat', 'notes.txt'), Command('grep', 'a|b'), Command('wc', '-l'))

        Raise :class:`ParseError` for the first command that fails to parse.
        Empty text and empty segments, like the one in ``"a || b"``, are
        errors.
        """  # noqa: E501
        if not is_unicode(text):
            raise TypeError("Not a valid pipe string: " + repr(text))
        commands = [parse_command(segment, text) for segment in split_segments(text)]
        return cls(*commands)

    @property
    def stages(self):
        return tuple(self._stages)

    @property
    def state(self):
        r"""Where the pipe is in its lifecycle: ``"empty"`` with no stages,
        ``"building"`` with stages but nothing to collect, ``"spawning"`` while
        the last started stage is waiting to be collected, and ``"finalized"``
        once :func:`output` has been cached.
        """
        if not self._stages:
            return "empty"
        if self._output is not None:
            return "finalized"
        if self._active is not None:
            return "spawning"
        return "building"

    def stage_states(self):
        r"""Return the state name of every stage, in pipe order.

        >>> pipe = CommandPipe.from_string("echo hi | cat")
        >>> pipe.stage_states()
        ['pending', 'pending']
        >>> pipe.spawn()
        >>> pipe.stage_states()
        ['stdout_taken', 'started']
        >>> pipe.output().stdout
        b'hi\n'
        >>> pipe.stage_states()
        ['stdout_taken', 'reaped']
        """
        return [STATE_NAMES[state] for state in self._states]

    def add_command(self, command):
        r"""Append a stage. This takes either a :class:`Command` or a program
        name or path, which becomes a command with no arguments.

        A command belongs to the pipe it's added to. Raise
        :class:`RuntimeError` if it has already been spawned by a pipe.
        """
        if not isinstance(command, Command):
            command = Command(command)
        command._check_not_spawned()
        self._stages.append(command)
        self._states.append(PENDING)
        return self

    def arg(self, value):
        r"""Append one argument to the last stage. Raise :class:`IndexError`
        if the pipe has no stages."""
        self._last_stage().arg(value)
        return self

    def args(self, values):
        r"""Append several arguments to the last stage. Raise
        :class:`IndexError` if the pipe has no stages."""
        self._last_stage().args(values)
        return self

    def stderr_capture(self):
        r"""Capture the standard error of every stage. The bytes become the
        ``stderr`` field of the :class:`Output`. Without this, the stages
        inherit the parent's standard error.

        >>> pipe = CommandPipe(Command("sh", "-c", "echo hi 1>&2"))
        >>> pipe.stderr_capture().spawn_with_output()
        Output(status=0, stdout=b'', stderr=b'hi\n')
        """
        self._stderr_capture = True
        return self

    def spawn(self):
        r"""Start every stage in order, waiting for each one to exit before
        starting the next. The first stage reads from ``/dev/null``, and every
        later stage reads the output of the one before it.

        If a stage can't be started, raise :class:`ProcessStartError` and
        don't start any later stages. Stages that already ran are not undone.

        Spawning a pipe that has run before starts over from scratch,
        discarding any output that wasn't collected. Raise
        :class:`ValueError` if the pipe has no stages.
        """
        if not self._stages:
            raise ValueError("Cannot spawn a pipe with no commands.")
        self.close()
        self._output = None
        self._states = [PENDING] * len(self._stages)
        stderr_reader = StderrCapture()
        self._stderr_reader = stderr_reader
        stderr = None
        if self._stderr_capture:
            stderr = stderr_reader.start()
        try:
            for index, command in enumerate(self._stages):
                self._spawn_stage(index, command, stderr)
        finally:
            # The children have their own copies. The reader thread gets EOF
            # once they're all closed.
            stderr_reader.close_write_pipe()

    def _spawn_stage(self, index, command, stderr):
        stdin = subprocess.DEVNULL
        if self._active is not None:
            # Hand the previous stage's stdout over to this stage, so that it
            # can't be read twice.
            stdin = self._active.stdout
            self._active.stdout = None
            self._states[self._active_index] = STDOUT_TAKEN
            self._active = None
            self._active_index = None

        logger.debug("Spawning stage %d: %s", index, command)
        try:
            child = start_command(command, stdin, stderr)
        except OSError as e:
            raise ProcessStartError(index, command.program, e) from e
        finally:
            if stdin is not subprocess.DEVNULL:
                stdin.close()
        self._states[index] = STARTED

        try:
            status = child.wait()
        except OSError as e:
            child.stdout.close()
            raise ProcessWaitError(index, command.program, e) from e
        logger.debug("Stage %d exited with status %d", index, status)
        self._active = child
        self._active_index = index

    def output(self):
        r"""Collect the :class:`Output` of the last stage. The result is
        cached, and later calls return the same object without touching any
        child process.

        Raise :class:`NoActiveProcess` if the pipe hasn't been spawned.
        """
        if self._output is not None:
            return self._output
        if self._active is None:
            raise NoActiveProcess()

        child = self._active
        index = self._active_index
        self._active = None
        self._active_index = None
        try:
            with child.stdout:
                stdout = child.stdout.read()
            status = child.wait()
            stderr = self._stderr_reader.collect()
        except OSError as e:
            raise ProcessWaitError(index, self._stages[index].program, e) from e
        self._states[index] = REAPED
        self._output = Output(status, stdout, stderr)
        logger.debug(
            "Collected %d stdout bytes and %d stderr bytes from stage %d",
            len(stdout),
            len(stderr),
            index,
        )
        return self._output

    def spawn_with_output(self):
        r"""Call :func:`spawn` and then :func:`output`."""
        self.spawn()
        return self.output()

    def read(self):
        r"""Run the pipe and return its standard output as a string, similar
        to backticks or $() in the shell. The bytes are decoded as UTF-8, and
        trailing newlines are trimmed.

        >>> CommandPipe.from_string("echo hi").read()
        'hi'
        """
        stdout_bytes = self.spawn_with_output().stdout
        stdout_str = decode_with_universal_newlines(stdout_bytes)
        return stdout_str.rstrip("\n")

    def close(self):
        r"""Release the child process that's waiting to be collected, if
        any, without building an :class:`Output`. A cached output is kept.
        """
        if self._active is not None:
            child = self._active
            self._active = None
            self._active_index = None
            if child.stdout is not None:
                child.stdout.close()
            child.wait()
        self._stderr_reader = None

    def _last_stage(self):
        if not self._stages:
            raise IndexError("No command in pipe to add arguments to.")
        return self._stages[-1]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def __len__(self):
        return len(self._stages)

    def __or__(self, other):
        if not isinstance(other, Command):
            return NotImplemented
        new_pipe = CommandPipe(*[command._copy() for command in self._stages])
        new_pipe._stderr_capture = self._stderr_capture
        return new_pipe.add_command(other)

    def __repr__(self):
        stages_str = ", ".join(repr(command) for command in self._stages)
        ret = "CommandPipe({0})".format(stages_str)
        if self._stderr_capture:
            ret += ".stderr_capture()"
        return ret

    def __str__(self):
        return " | ".join(str(command) for command in self._stages)


def parse_command(segment, text):
    if not is_unicode(segment):
        raise TypeError("Not a valid command string: " + repr(segment))
    if not segment.strip():
        raise ParseError(text, segment, "empty command")
    try:
        words = split_words(segment)
    except ValueError as e:
        raise ParseError(text, segment, str(e).lower()) from e
    if words[0] == "":
        raise ParseError(text, segment, "empty program name")
    return Command(words[0], *words[1:])


def split_words(text):
    lexer = shlex.shlex(text, posix=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    # Backslashes are ordinary characters, so regexes and Windows paths
    # survive without quoting.
    lexer.escape = ""
    return list(lexer)


# Split on every delimiter that isn't inside quotes. Quotes are left in place
# for split_words() to deal with, including unclosed ones.
def split_segments(text):
    segments = []
    current = []
    quote = None
    for char in text:
        if quote is not None:
            if char == quote:
                quote = None
        elif char in QUOTES:
            quote = char
        elif char == PIPE_DELIMITER:
            segments.append("".join(current))
            current = []
            continue
        current.append(char)
    segments.append("".join(current))
    return segments


def start_command(command, stdin, stderr):
    argv = command.argv()
    kwargs = {
        "cwd": stringify_if_path(command._dir),
        "env": command._child_env(),
        "stdin": stdin,
        "stdout": subprocess.PIPE,
        "stderr": stderr,
    }
    # A command is spent once it has been handed to the OS, whether or not
    # the start succeeds.
    command._spawned = True
    return safe_popen(argv, **kwargs)


def is_unicode(val):
    return isinstance(val, str)


# The stderr_capture() pipe is shared by all stages, and a background thread
# drains it while the stages run one at a time. Otherwise a chatty stage could
# fill the pipe buffer and block before it ever exits.
class StderrCapture:
    def __init__(self):
        self._write_pipe = None
        self._thread = None

    def start(self):
        read_pipe, self._write_pipe = open_pipe()

        def read_fn():
            with read_pipe:
                return read_pipe.read()

        self._thread = DaemonicThread(read_fn)
        self._thread.start()
        return self._write_pipe

    def close_write_pipe(self):
        if self._write_pipe is not None:
            self._write_pipe.close()

    def collect(self):
        if self._thread is None:
            return b""
        return self._thread.join()


def stringify_if_path(x):
    if isinstance(x, PurePath):
        return str(x)
    return x


# Pathlib never renders a leading './' in front of a local path. On POSIX,
# subprocess (like bash) won't execute a script in the current directory
# without it, and we don't want Path('echo') to match '/usr/bin/echo' from the
# PATH either. So we explicitly join a leading dot to any relative pathlib
# path.
def stringify_with_dot_if_path(x):
    if isinstance(x, PurePath):
        # Note that join does nothing if the path is absolute.
        return os.path.join(".", str(x))
    return x


# Runs a reader function in the background without keeping the interpreter
# alive. join() hands back the function's result, or raises its exception.
class DaemonicThread(threading.Thread):
    def __init__(self, read_fn):
        threading.Thread.__init__(self, daemon=True)
        self._read_fn = read_fn
        self._return = None
        self._exception = None

    def run(self):
        try:
            self._return = self._read_fn()
        except Exception as e:
            self._exception = e

    def join(self):
        threading.Thread.join(self)
        if self._exception is not None:
            raise self._exception
        return self._return


def open_pipe():
    read_fd, write_fd = os.pipe()
    return os.fdopen(read_fd, "rb"), os.fdopen(write_fd, "wb")


# Exe paths can be relative, and Unix resolves them against the child's
# working directory after the fork-chdir-exec dance, while Windows uses the
# parent's. We want the parent's consistently, so when a command has a `dir`,
# names with a separator in them are made absolute first. Bare names like
# "grep" are left alone, since those are looked up in the PATH.
def maybe_canonicalize_exe_path(exe_name):
    has_sep = os.path.sep in exe_name or (
        os.path.altsep is not None and os.path.altsep in exe_name
    )
    if has_sep and not os.path.isabs(exe_name):
        return os.path.realpath(exe_name)
    return exe_name


popen_lock = threading.Lock()


def is_windows():
    return os.name == "nt"


# The Windows implementation of subprocess.Popen() creates temporary
# inheritable copies of the handles it's given, and a second Popen() call
# running at the same moment can inherit them. With pipes, an extra write
# handle keeps the reader from ever seeing EOF. See
# https://bugs.python.org/issue25565. A global lock around Popen() avoids it.
def safe_popen(*args, **kwargs):
    with popen_lock:
        return subprocess.Popen(*args, **kwargs)


def decode_with_universal_newlines(b):
    return b.decode("utf8").replace("\r\n", "\n").replace("\r", "\n")


# Python on Windows uppercases the keys of os.environ, and so does
# os.environ.copy(). Additions and removals have to match that, or they won't
# interact properly with the inherited environment.
def convert_env_var_name(var):
    if is_windows():
        return var.upper()
    return var
