"""
agstream - AG-UI event streaming and subscriber dispatch.
"""

__version__ = "0.1.0"

from .agent import AbstractAgent as AbstractAgent
from .agent import RunResult as RunResult
from .encoding import EventDecoder as EventDecoder
from .encoding import EventEncoder as EventEncoder
from .events import Event as Event
from .http import HttpAgent as HttpAgent
from .local import LocalAgent as LocalAgent
from .models import RunInput as RunInput
from .state import RunState as RunState
from .state import StateMutation as StateMutation
from .subscriber import AgentSubscriber as AgentSubscriber
from .translate import ProviderDelta as ProviderDelta
