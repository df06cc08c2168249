"""Mixer protocol, transport and session handling."""

from .channel import send_commands
from .connection import MixerConnection
from .protocol import MixerCommand, geometry_commands, parse_roster, parse_tally
from .session import ActiveInputs, ConnectionState, MixerInstance, RosterEntry, SessionManager

__all__ = [
    "ActiveInputs",
    "ConnectionState",
    "MixerCommand",
    "MixerConnection",
    "MixerInstance",
    "RosterEntry",
    "SessionManager",
    "geometry_commands",
    "parse_roster",
    "parse_tally",
    "send_commands",
]
