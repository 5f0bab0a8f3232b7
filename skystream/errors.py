"""Exceptions raised by the pipeline stages and their clients."""


class PipelineError(Exception):
    """Base class for errors raised by skystream."""


class EventParseError(PipelineError):
    """An inbound event or log entry could not be projected onto a PostEvent."""


class NotConnectedError(PipelineError):
    """A client was used before connect() or after close()."""
