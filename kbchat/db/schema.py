from __future__ import annotations

from kbchat.db.postgres import import_psycopg

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id uuid PRIMARY KEY,
        user_id text NOT NULL,
        title text NOT NULL DEFAULT 'New Session',
        active_index_names jsonb NOT NULL DEFAULT '[]'::jsonb,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_generations (
        id text PRIMARY KEY,
        conversation_id uuid NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
        user_id text NOT NULL,
        task_id text,
        status text NOT NULL DEFAULT 'processing'
            CHECK (status IN ('processing', 'completed', 'failed', 'expired')),
        error_message text,
        assistant_message_id text,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now(),
        completed_at timestamptz,
        expires_at timestamptz NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS chat_generations_conversation_status_updated_idx
        ON chat_generations (conversation_id, status, updated_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id text PRIMARY KEY,
        conversation_id uuid NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
        user_id text NOT NULL,
        role text NOT NULL CHECK (role IN ('user', 'assistant')),
        content text NOT NULL,
        markdown_content text NOT NULL,
        citations jsonb NOT NULL DEFAULT '[]'::jsonb,
        matches jsonb NOT NULL DEFAULT '[]'::jsonb CHECK (jsonb_typeof(matches) = 'array'),
        generation_id text REFERENCES chat_generations (id) ON DELETE SET NULL,
        created_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS messages_assistant_generation_unique_idx
        ON messages (generation_id)
        WHERE generation_id IS NOT NULL AND role = 'assistant'
    """,
    """
    CREATE TABLE IF NOT EXISTS user_index_access (
        user_id text NOT NULL,
        index_name text NOT NULL,
        PRIMARY KEY (user_id, index_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_limits (
        user_id text PRIMARY KEY,
        daily_limit integer NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_usage (
        user_id text NOT NULL,
        usage_date date NOT NULL,
        request_count integer NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, usage_date)
    )
    """,
    """
    CREATE OR REPLACE FUNCTION consume_daily_quota(p_user_id text, p_default_limit integer)
    RETURNS TABLE (allowed boolean, daily_limit integer, used integer, remaining integer, reset_at timestamptz)
    LANGUAGE plpgsql AS $$
    DECLARE
        v_limit integer;
        v_used integer;
        v_today date := (now() AT TIME ZONE 'utc')::date;
    BEGIN
        SELECT ul.daily_limit INTO v_limit FROM user_limits ul WHERE ul.user_id = p_user_id;
        v_limit := greatest(1, least(10000, coalesce(v_limit, p_default_limit)));
        INSERT INTO daily_usage AS du (user_id, usage_date, request_count)
        VALUES (p_user_id, v_today, 0)
        ON CONFLICT (user_id, usage_date) DO NOTHING;
        SELECT du.request_count INTO v_used FROM daily_usage du
        WHERE du.user_id = p_user_id AND du.usage_date = v_today FOR UPDATE;
        IF v_used < v_limit THEN
            UPDATE daily_usage SET request_count = request_count + 1
            WHERE daily_usage.user_id = p_user_id AND daily_usage.usage_date = v_today;
            v_used := v_used + 1;
            allowed := true;
        ELSE
            allowed := false;
        END IF;
        daily_limit := v_limit;
        used := v_used;
        remaining := greatest(0, v_limit - v_used);
        reset_at := ((v_today + 1)::timestamp AT TIME ZONE 'utc');
        RETURN NEXT;
    END;
    $$
    """,
)


class PostgresSchemaManager:
    """Create the chat tables, the assistant-per-generation unique index and the quota function."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def apply(self) -> int:
        psycopg = import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        return len(SCHEMA_STATEMENTS)
