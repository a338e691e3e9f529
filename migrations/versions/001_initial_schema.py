"""Initial schema (SQL-only).

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op


# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE instances (
    id               uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    instance_id      text NOT NULL,
    client_scope_id  text NOT NULL,
    state            text NOT NULL DEFAULT 'close',
    qr_code          text,
    has_qr_code      boolean NOT NULL DEFAULT false,
    qr_expires_at    timestamptz,
    profile_name     text,
    profile_pic_url  text,
    owner_jid        text,
    last_event_at    timestamptz,
    created_at       timestamptz NOT NULL DEFAULT now(),
    updated_at       timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT uq_instances_instance_id UNIQUE (instance_id),
    CONSTRAINT ck_instances_state CHECK (state IN ('open', 'connecting', 'close'))
);

CREATE TABLE customers (
    id               uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    client_scope_id  text NOT NULL,
    phone            text NOT NULL,
    chat_identity    text,
    display_name     text NOT NULL,
    created_at       timestamptz NOT NULL DEFAULT now(),
    updated_at       timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT uq_customers_scope_phone UNIQUE (client_scope_id, phone)
);

CREATE TABLE tickets (
    id                    uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    client_scope_id       text NOT NULL,
    chat_id               text NOT NULL,
    instance_id           text NOT NULL,
    customer_id           uuid REFERENCES customers(id),
    status                text NOT NULL DEFAULT 'open',
    title                 text,
    last_message_preview  varchar(255),
    last_message_at       timestamptz,
    created_at            timestamptz NOT NULL DEFAULT now(),
    updated_at            timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT uq_tickets_scope_chat UNIQUE (client_scope_id, chat_id)
);

CREATE INDEX ix_tickets_scope_last_message_at
    ON tickets (client_scope_id, last_message_at DESC);

CREATE TABLE ticket_messages (
    id                   uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    ticket_id            uuid NOT NULL REFERENCES tickets(id),
    instance_id          text NOT NULL,
    provider_message_id  text NOT NULL,
    from_me              boolean NOT NULL DEFAULT false,
    sender_name          text,
    content              text NOT NULL DEFAULT '',
    message_type         text NOT NULL,
    timestamp            timestamptz NOT NULL,
    media_ref            jsonb,
    remote_jid           text,
    chat_id              text,
    processing_status    text NOT NULL DEFAULT 'received',
    media_annotation     text,
    correlation_id       text,
    created_at           timestamptz NOT NULL DEFAULT now(),
    updated_at           timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT uq_ticket_messages_instance_provider_id
        UNIQUE (instance_id, provider_message_id),
    CONSTRAINT ck_ticket_messages_processing_status
        CHECK (processing_status IN ('received', 'processed', 'analyzed', 'failed'))
);

CREATE INDEX ix_ticket_messages_ticket_timestamp
    ON ticket_messages (ticket_id, timestamp);

CREATE TABLE chats (
    id               uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    instance_id      text NOT NULL,
    chat_id          text NOT NULL,
    remote_jid       text,
    name             text,
    is_group         boolean NOT NULL DEFAULT false,
    unread_count     integer,
    profile_pic_url  text,
    created_at       timestamptz NOT NULL DEFAULT now(),
    updated_at       timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT uq_chats_instance_chat UNIQUE (instance_id, chat_id)
);

CREATE TABLE processed_events (
    id           uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    instance_id  text NOT NULL,
    source       text NOT NULL,
    external_id  text NOT NULL,
    completed_at timestamptz,
    created_at   timestamptz NOT NULL DEFAULT now(),
    updated_at   timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT uq_processed_events_key UNIQUE (instance_id, source, external_id)
);
"""


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(SCHEMA_SQL)


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
