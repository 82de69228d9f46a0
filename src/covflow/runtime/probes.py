"""
Runtime probes called by instrumented code.

Instrumented modules get the callables below injected into their globals
under the names in PROBE_NAMES. Each probe reports one line to a
LineTracker and reproduces the number of times the interpreter would have
reported that line itself:
- hit: once, before a statement or as the left operand of a branch test
- iterate / aiterate: once per ``__next__``, i.e. once per iteration plus the
  final exhausting call, like a ``for`` header
- with_context / async_with_context: once on entry and once on exit, like a
  ``with`` header
- value: once, passing a value through (except clauses, decorators)
"""

PROBE_NAMES = {
    "hit": "__covflow_hit__",
    "iterate": "__covflow_iter__",
    "aiterate": "__covflow_aiter__",
    "with_context": "__covflow_with__",
    "async_with_context": "__covflow_awith__",
    "value": "__covflow_value__",
}


class ProbeIterator:
    __slots__ = ("_track", "_file_id", "_line", "_iterator")

    def __init__(self, track, file_id, line, iterable):
        self._track = track
        self._file_id = file_id
        self._line = line
        self._iterator = iter(iterable)

    def __iter__(self):
        return self

    def __next__(self):
        self._track(self._file_id, self._line)
        return next(self._iterator)


class ProbeAsyncIterator:
    __slots__ = ("_track", "_file_id", "_line", "_iterator")

    def __init__(self, track, file_id, line, iterable):
        self._track = track
        self._file_id = file_id
        self._line = line
        try:
            self._iterator = type(iterable).__aiter__(iterable)
        except AttributeError:
            raise TypeError("'async for' requires an object with __aiter__ method, got %s"
                            % type(iterable).__name__) from None

    def __aiter__(self):
        return self

    async def __anext__(self):
        self._track(self._file_id, self._line)
        return await type(self._iterator).__anext__(self._iterator)


class ProbeContext:
    """Proxy for a context manager reporting its ``with`` line on entry and exit."""

    __slots__ = ("_track", "_file_id", "_line", "_manager", "_exit")

    def __init__(self, track, file_id, line, manager):
        manager_type = type(manager)
        try:
            self._exit = manager_type.__exit__
            manager_type.__enter__
        except AttributeError:
            raise TypeError("'%s' object does not support the context manager protocol"
                            % manager_type.__name__) from None
        self._track = track
        self._file_id = file_id
        self._line = line
        self._manager = manager
        track(file_id, line)

    def __enter__(self):
        return type(self._manager).__enter__(self._manager)

    def __exit__(self, exc_type, exc, tb):
        self._track(self._file_id, self._line)
        return self._exit(self._manager, exc_type, exc, tb)


class ProbeAsyncContext:
    __slots__ = ("_track", "_file_id", "_line", "_manager", "_exit")

    def __init__(self, track, file_id, line, manager):
        manager_type = type(manager)
        try:
            self._exit = manager_type.__aexit__
            manager_type.__aenter__
        except AttributeError:
            raise TypeError("'%s' object does not support the asynchronous context manager protocol"
                            % manager_type.__name__) from None
        self._track = track
        self._file_id = file_id
        self._line = line
        self._manager = manager
        track(file_id, line)

    async def __aenter__(self):
        return await type(self._manager).__aenter__(self._manager)

    async def __aexit__(self, exc_type, exc, tb):
        self._track(self._file_id, self._line)
        return await self._exit(self._manager, exc_type, exc, tb)


class Probes:
    """
    Probe callables bound to one tracker.

    Attributes:
        tracker: LineTracker receiving the reports
    """
    def __init__(self, tracker):
        self.tracker = tracker

    def hit(self, file_id, line):
        self.tracker.track(file_id, line)
        return True

    def iterate(self, file_id, line, iterable):
        return ProbeIterator(self.tracker.track, file_id, line, iterable)

    def aiterate(self, file_id, line, iterable):
        return ProbeAsyncIterator(self.tracker.track, file_id, line, iterable)

    def with_context(self, file_id, line, manager):
        return ProbeContext(self.tracker.track, file_id, line, manager)

    def async_with_context(self, file_id, line, manager):
        return ProbeAsyncContext(self.tracker.track, file_id, line, manager)

    def value(self, file_id, line, value):
        self.tracker.track(file_id, line)
        return value

    def namespace(self):
        """Mapping of injected global names to the bound probes."""
        return {name: getattr(self, attr) for attr, name in PROBE_NAMES.items()}

    def inject(self, globals_dict):
        globals_dict.update(self.namespace())
        return globals_dict
