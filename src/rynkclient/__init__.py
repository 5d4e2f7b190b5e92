"""rynkclient: streaming chat client for the rynk backend."""

__version__ = "0.1.0"

from .client import ApiClient, ChatStream
from .controller import ConversationController
from .credits import CreditGovernor
from .demux import StreamDemultiplexer, demux, demux_polled
from .editing import EditController
from .exceptions import (
    CreditExhausted,
    JobFailed,
    JobTimeout,
    NetworkFailure,
    ProtocolParseFailure,
    RynkError,
    VersionConflict,
)
from .jobs import JobPoller
from .session import SessionState, StreamingSession
from .store import MessageStore
from .subthreads import SubThreadManager
