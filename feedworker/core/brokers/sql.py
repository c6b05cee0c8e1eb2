"""SQL constants for the PostgreSQL feed store."""

from __future__ import annotations

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB

# ---------- Schema ----------

CREATE_NOTIFY_FUNCTION_SQL = text("""
CREATE OR REPLACE FUNCTION feedworker_notify_item_changes()
RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'INSERT' THEN
        PERFORM pg_notify('feedworker_' || NEW.feed, NEW.key);
        RETURN NEW;
    END IF;
    -- DELETE: the head may have moved; subscribers re-read it.
    PERFORM pg_notify('feedworker_' || OLD.feed, OLD.key);
    RETURN OLD;
END;
$$ LANGUAGE plpgsql;
""")

DROP_NOTIFY_TRIGGER_SQL = text("""
DROP TRIGGER IF EXISTS feedworker_item_notify_trigger ON feedworker_items;
""")

CREATE_NOTIFY_TRIGGER_SQL = text("""
CREATE TRIGGER feedworker_item_notify_trigger
    AFTER INSERT OR DELETE ON feedworker_items
    FOR EACH ROW
    EXECUTE FUNCTION feedworker_notify_item_changes();
""")

SCHEMA_ADVISORY_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")

# ---------- Items ----------

INSERT_ITEM_SQL = text("""
    INSERT INTO feedworker_items (feed, key, value, created_at, updated_at)
    VALUES (:feed, :key, :value, now(), now())
""").bindparams(bindparam('value', type_=JSONB))

# Row lock: a concurrent transaction on the same item waits for this one and
# then sees the committed value (or no row at all after a removal).
SELECT_ITEM_FOR_UPDATE_SQL = text("""
    SELECT value
    FROM feedworker_items
    WHERE feed = :feed AND key = :key
    FOR UPDATE
""")

UPSERT_ITEM_SQL = text("""
    INSERT INTO feedworker_items (feed, key, value, created_at, updated_at)
    VALUES (:feed, :key, :value, now(), now())
    ON CONFLICT (feed, key)
    DO UPDATE SET value = EXCLUDED.value, updated_at = now()
""").bindparams(bindparam('value', type_=JSONB))

DELETE_ITEM_SQL = text("""
    DELETE FROM feedworker_items
    WHERE feed = :feed AND key = :key
""")

HEAD_KEYS_SQL = text("""
    SELECT key
    FROM feedworker_items
    WHERE feed = :feed
    ORDER BY key ASC
    LIMIT :lim
""")

COUNT_ITEMS_SQL = text("""
    SELECT COUNT(*) FROM feedworker_items WHERE feed = :feed
""")
