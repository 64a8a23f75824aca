"""
Services package.
Session lifecycle, message reconciliation, agent intervention and the
automation responder client.

Version: 1.0.0
"""
from .lifecycle import SessionLifecycleManager, generate_session_id, generate_visitor_id
from .reconciler import (
    MessageReconciler,
    MessageValidationError,
    Timeline,
    TimelineEntry,
    validate_message_text,
)
from .intervention import AgentInterventionBridge, InterventionError, SessionViewer
from .responder import (
    Responder,
    AutomationResponder,
    ResponderError,
    ResponderHTTPError,
    ResponderUnavailableError,
)
from .stats import StatsService, compute_chat_stats
from .auth_service import AgentIdentity

__all__ = [
    'SessionLifecycleManager',
    'generate_session_id',
    'generate_visitor_id',
    'MessageReconciler',
    'MessageValidationError',
    'Timeline',
    'TimelineEntry',
    'validate_message_text',
    'AgentInterventionBridge',
    'InterventionError',
    'SessionViewer',
    'Responder',
    'AutomationResponder',
    'ResponderError',
    'ResponderHTTPError',
    'ResponderUnavailableError',
    'StatsService',
    'compute_chat_stats',
    'AgentIdentity',
]
