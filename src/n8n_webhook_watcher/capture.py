from __future__ import annotations

import logging
from typing import Any

import psycopg

from n8n_webhook_watcher.errors import ChangeCaptureInstallError

LOGGER = logging.getLogger(__name__)

CHANNEL = "workflow_changed"
WATCHED_TABLE = "workflow_entity"
NOTIFY_FUNCTION = "notify_workflow_change"
TRIGGER_NAME = "n8n_workflow_change_trigger"

# Post-image for INSERT/UPDATE, pre-image for DELETE. pg_notify inside the row trigger is
# only delivered when the enclosing transaction commits.
CREATE_NOTIFY_FUNCTION_SQL = f"""
CREATE OR REPLACE FUNCTION {NOTIFY_FUNCTION}()
RETURNS TRIGGER AS $$
BEGIN
  PERFORM pg_notify('{CHANNEL}',
    json_build_object(
      'action', TG_OP,
      'workflow_id', COALESCE(NEW.id, OLD.id),
      'workflow_name', COALESCE(NEW.name, OLD.name),
      'active', COALESCE(NEW.active, OLD.active),
      'updated_at', COALESCE(NEW."updatedAt", OLD."updatedAt"),
      'timestamp', NOW()
    )::text
  );
  RETURN COALESCE(NEW, OLD);
END;
$$ LANGUAGE plpgsql
"""

DROP_TRIGGER_SQL = f"DROP TRIGGER IF EXISTS {TRIGGER_NAME} ON {WATCHED_TABLE}"

CREATE_TRIGGER_SQL = f"""
CREATE TRIGGER {TRIGGER_NAME}
  AFTER INSERT OR UPDATE OR DELETE ON {WATCHED_TABLE}
  FOR EACH ROW EXECUTE FUNCTION {NOTIFY_FUNCTION}()
"""

INSTALL_STATEMENTS = (CREATE_NOTIFY_FUNCTION_SQL, DROP_TRIGGER_SQL, CREATE_TRIGGER_SQL)


async def install_change_capture(connection: psycopg.AsyncConnection[Any]) -> None:
    """Create or replace the notify function and recreate the row trigger.

    Safe to run on every connect; the result is always one function and one trigger.
    """

    LOGGER.info("change_capture_install_start", extra={"table": WATCHED_TABLE})
    try:
        async with connection.cursor() as cursor:
            for statement in INSTALL_STATEMENTS:
                await cursor.execute(statement)
    except psycopg.Error as exc:
        LOGGER.error(
            "change_capture_install_failed",
            extra={"table": WATCHED_TABLE, "error": str(exc)},
        )
        raise ChangeCaptureInstallError(
            f"Failed to install {TRIGGER_NAME} on {WATCHED_TABLE}: {exc}"
        ) from exc

    LOGGER.info(
        "change_capture_installed",
        extra={"trigger": TRIGGER_NAME, "function": NOTIFY_FUNCTION, "channel": CHANNEL},
    )
