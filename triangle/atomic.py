# triangle/atomic.py
import time
from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from extensions import db
from logger import alert_logger
from triangle import events
from triangle.errors import ConcurrentUpdate, ConsistencyViolation


def _is_busy(error: OperationalError) -> bool:
    message = str(getattr(error, "orig", error)).lower()
    return "database is locked" in message or "could not serialize" in message or "deadlock" in message


def run_atomically(work, *args, retries: int = None, **kwargs):
    """
    Run `work(*args, **kwargs)` as one unit of work.

    Commits on success and then dispatches queued engine events. Any
    exception rolls everything back. Optimistic-lock conflicts and busy
    database errors re-run the whole unit up to PLACEMENT_MAX_RETRIES times.
    A unique-key clash is re-run the same way, so checks such as the
    duplicate-account lookup see the row a concurrent unit committed.
    A ConsistencyViolation freezes the affected formation and alerts
    operators before it propagates.
    """
    max_attempts = retries or current_app.config.get("PLACEMENT_MAX_RETRIES", 5)
    attempt = 0

    while True:
        attempt += 1
        try:
            result = work(*args, **kwargs)
            db.session.commit()
        except (StaleDataError, OperationalError) as e:
            db.session.rollback()
            events.discard_pending()
            if isinstance(e, OperationalError) and not _is_busy(e):
                raise
            if attempt >= max_attempts:
                current_app.logger.error(f"{work.__name__} gave up after {attempt} conflicting attempts: {e}")
                raise ConcurrentUpdate(attempts=attempt)
            current_app.logger.warning(f"{work.__name__} conflict on attempt {attempt}, retrying: {e}")
            time.sleep(0.01 * attempt)
            continue
        except IntegrityError as e:
            db.session.rollback()
            events.discard_pending()
            if attempt >= max_attempts:
                raise
            current_app.logger.warning(f"{work.__name__} hit a unique constraint on attempt {attempt}, retrying: {e.orig}")
            continue
        except ConsistencyViolation as e:
            db.session.rollback()
            events.discard_pending()
            freeze_formation(e)
            raise
        except Exception:
            db.session.rollback()
            events.discard_pending()
            raise

        events.dispatch_pending()
        return result


def freeze_formation(violation: ConsistencyViolation):
    """Halt writes to the formation named by the violation and raise the alert."""
    from models import Triangle

    violation.alerted = True

    alert_logger.critical(
        f"Consistency violation on formation {violation.triangle_id}: {violation.message} {violation.details}"
    )
    if violation.triangle_id is not None:
        try:
            Triangle.query.filter_by(id=violation.triangle_id).update(
                {"frozen": True}, synchronize_session=False
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            alert_logger.critical(f"Could not freeze formation {violation.triangle_id}: {e}")

    try:
        events.consistency_alert.send(
            current_app._get_current_object(),
            triangle_id=violation.triangle_id,
            message=violation.message,
            details=violation.details,
        )
    except Exception as e:
        alert_logger.error(f"Consistency alert subscriber failed: {e}")
