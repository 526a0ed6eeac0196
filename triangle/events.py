# triangle/events.py
"""
Engine events.

Collaborators connect to these signals for push-style updates:

    from triangle.events import formation_completed

    @formation_completed.connect
    def on_complete(app, triangle_id, plan_name, **extra):
        ...

Events raised inside a unit of work are only queued; `run_atomically`
dispatches them after the commit succeeds and drops them on rollback.
"""
from flask import current_app
from blinker import Namespace
from extensions import db

engine_signals = Namespace()

formation_completed = engine_signals.signal("formation-completed")
formation_cycled = engine_signals.signal("formation-cycled")
transaction_finalized = engine_signals.signal("transaction-finalized")
consistency_alert = engine_signals.signal("consistency-alert")

_PENDING_KEY = "pending_engine_events"


def queue(signal, **payload):
    """Hold an event on the current session until commit."""
    db.session.info.setdefault(_PENDING_KEY, []).append((signal, payload))


def discard_pending():
    db.session.info.pop(_PENDING_KEY, None)


def dispatch_pending():
    pending = db.session.info.pop(_PENDING_KEY, [])
    if not pending:
        return
    app = current_app._get_current_object()
    for signal, payload in pending:
        try:
            signal.send(app, **payload)
        except Exception as e:
            # Subscribers must not undo a committed unit of work.
            current_app.logger.error(f"Event subscriber for {signal.name} failed: {e}")
