"""
Chatdesk: chat session lifecycle, realtime message reconciliation and
agent intervention for an embeddable support widget.
"""

__version__ = "1.0.0"
