"""Presence and signaling relay.

Tracks who is connected right now and forwards chat, typing, call invitation
and WebRTC signaling events between two connected users. Nothing is stored.
"""

from .protocol import PROTOCOL_VERSION

__all__ = ["PROTOCOL_VERSION"]
