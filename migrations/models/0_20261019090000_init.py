from tortoise import BaseDBAsyncClient


async def upgrade(db: BaseDBAsyncClient) -> str:
    return """
        CREATE TABLE IF NOT EXISTS "user" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "name" VARCHAR(255) NOT NULL,
    "email" VARCHAR(255) NOT NULL,
    "role" VARCHAR(255) NOT NULL  DEFAULT 'user',
    "client_identity" VARCHAR(128) NOT NULL UNIQUE,
    "last_password_change" TIMESTAMPTZ,
    "created_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS "user_voip_settings" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "assigned_phone_number" VARCHAR(32),
    "caller_id_number" VARCHAR(32),
    "auto_record" BOOL NOT NULL  DEFAULT True,
    "auto_transcribe" BOOL NOT NULL  DEFAULT True,
    "sms_enabled" BOOL NOT NULL  DEFAULT True,
    "from_email" VARCHAR(255),
    "updated_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "user_id" INT NOT NULL UNIQUE REFERENCES "user" ("id") ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS "idx_user_voip_s_assigne_5c1e0a" ON "user_voip_settings" ("assigned_phone_number");
CREATE TABLE IF NOT EXISTS "aerich" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "version" VARCHAR(255) NOT NULL,
    "app" VARCHAR(100) NOT NULL,
    "content" JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS "call_records" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "call_sid" VARCHAR(64) NOT NULL UNIQUE,
    "lead_id" INT,
    "customer_id" INT,
    "deal_id" INT,
    "direction" VARCHAR(8) NOT NULL  DEFAULT 'outbound',
    "from_number" VARCHAR(32),
    "to_number" VARCHAR(32),
    "status" VARCHAR(16) NOT NULL  DEFAULT 'initiated',
    "duration_seconds" INT,
    "recording_state" VARCHAR(24) NOT NULL  DEFAULT 'none',
    "recording_sid" VARCHAR(64),
    "recording_url" VARCHAR(500),
    "recording_duration_seconds" INT,
    "auto_transcribe" BOOL NOT NULL  DEFAULT True,
    "transcription_state" VARCHAR(16) NOT NULL  DEFAULT 'none',
    "transcription" TEXT,
    "analysis_state" VARCHAR(16) NOT NULL  DEFAULT 'none',
    "sentiment_score" DOUBLE PRECISION,
    "sentiment_label" VARCHAR(16),
    "key_topics" JSONB,
    "action_items" JSONB,
    "ai_summary" TEXT,
    "error" TEXT,
    "created_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "updated_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "ended_at" TIMESTAMPTZ,
    "archived_at" TIMESTAMPTZ,
    "user_id" INT REFERENCES "user" ("id") ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS "idx_call_record_recordi_3b8f21" ON "call_records" ("recording_sid");
CREATE INDEX IF NOT EXISTS "idx_call_record_user_id_9d4c7e" ON "call_records" ("user_id", "created_at");
CREATE INDEX IF NOT EXISTS "idx_call_record_to_numb_61a2f0" ON "call_records" ("to_number");
CREATE INDEX IF NOT EXISTS "idx_call_record_from_nu_c07b93" ON "call_records" ("from_number");
COMMENT ON COLUMN "call_records"."direction" IS 'INBOUND: inbound\nOUTBOUND: outbound';
COMMENT ON COLUMN "call_records"."status" IS 'QUEUED: queued\nINITIATED: initiated\nRINGING: ringing\nIN_PROGRESS: in-progress\nCOMPLETED: completed\nBUSY: busy\nNO_ANSWER: no-answer\nFAILED: failed\nCANCELED: canceled';
COMMENT ON COLUMN "call_records"."recording_state" IS 'NONE: none\nAVAILABLE: recording-available';
COMMENT ON COLUMN "call_records"."transcription_state" IS 'NONE: none\nPENDING: pending\nPROCESSING: processing\nCOMPLETED: completed\nFAILED: failed';
COMMENT ON COLUMN "call_records"."analysis_state" IS 'NONE: none\nCOMPLETED: completed\nFAILED: failed';
CREATE TABLE IF NOT EXISTS "outbound_messages" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "channel" VARCHAR(8) NOT NULL,
    "direction" VARCHAR(8) NOT NULL  DEFAULT 'outbound',
    "from_address" VARCHAR(255),
    "to_address" VARCHAR(255) NOT NULL,
    "subject" VARCHAR(500),
    "body" TEXT NOT NULL,
    "conversation_key" VARCHAR(255) NOT NULL,
    "status" VARCHAR(12) NOT NULL  DEFAULT 'queued',
    "provider_message_id" VARCHAR(255) UNIQUE,
    "scheduled_for" TIMESTAMPTZ,
    "attempt_count" INT NOT NULL  DEFAULT 0,
    "sweep_attempts" INT NOT NULL  DEFAULT 0,
    "last_attempt_at" TIMESTAMPTZ,
    "error_code" VARCHAR(32),
    "error_message" TEXT,
    "lead_id" INT,
    "customer_id" INT,
    "is_read" BOOL NOT NULL  DEFAULT True,
    "created_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "updated_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "sent_at" TIMESTAMPTZ,
    "delivered_at" TIMESTAMPTZ,
    "call_id" INT REFERENCES "call_records" ("id") ON DELETE SET NULL,
    "user_id" INT REFERENCES "user" ("id") ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS "idx_outbound_me_convers_7e51d4" ON "outbound_messages" ("conversation_key");
CREATE INDEX IF NOT EXISTS "idx_outbound_me_status_2f9a60" ON "outbound_messages" ("status", "created_at");
CREATE INDEX IF NOT EXISTS "idx_outbound_me_user_id_b3c8e1" ON "outbound_messages" ("user_id", "conversation_key", "created_at");
COMMENT ON COLUMN "outbound_messages"."channel" IS 'SMS: sms\nEMAIL: email';
COMMENT ON COLUMN "outbound_messages"."direction" IS 'OUTBOUND: outbound\nINBOUND: inbound';
COMMENT ON COLUMN "outbound_messages"."status" IS 'QUEUED: queued\nSENDING: sending\nSENT: sent\nDELIVERED: delivered\nFAILED: failed\nRECEIVED: received';
CREATE TABLE IF NOT EXISTS "pipeline_jobs" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "kind" VARCHAR(16) NOT NULL,
    "status" VARCHAR(12) NOT NULL  DEFAULT 'queued',
    "error" TEXT,
    "created_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "updated_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "started_at" TIMESTAMPTZ,
    "finished_at" TIMESTAMPTZ,
    "call_id" INT NOT NULL REFERENCES "call_records" ("id") ON DELETE CASCADE,
    CONSTRAINT "uid_pipeline_jo_call_id_4e0b72" UNIQUE ("call_id", "kind")
);
CREATE INDEX IF NOT EXISTS "idx_pipeline_jo_status_8a1d35" ON "pipeline_jobs" ("status", "created_at");
COMMENT ON COLUMN "pipeline_jobs"."kind" IS 'TRANSCRIPTION: transcription\nANALYSIS: analysis';
COMMENT ON COLUMN "pipeline_jobs"."status" IS 'QUEUED: queued\nRUNNING: running\nSUCCEEDED: succeeded\nFAILED: failed';
COMMENT ON TABLE "pipeline_jobs" IS 'Work owed on a call record. One row per (call, kind).';"""


async def downgrade(db: BaseDBAsyncClient) -> str:
    return """
        """
