#!/usr/bin/env python3
"""Apply the control plane schema: jobs, audit log and the domain tables it reconciles."""
import asyncio
import asyncpg
import os

MIGRATION = """
CREATE TABLE IF NOT EXISTS jobs (
    id UUID PRIMARY KEY,
    type TEXT NOT NULL,
    family TEXT NOT NULL,
    agent_id TEXT,
    payload JSONB NOT NULL DEFAULT '{}',
    idempotency_key TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued'
        CHECK (status IN ('queued', 'running', 'succeeded', 'failed', 'cancelled')),
    locked_by TEXT,
    lock_expires_at TIMESTAMPTZ,
    lease_recoveries INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    result_status TEXT,
    result_output JSONB,
    result_completed_at TIMESTAMPTZ,
    error_text TEXT,
    log_text TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_active_idempotency_key
    ON jobs(idempotency_key) WHERE status IN ('queued', 'running');
CREATE INDEX IF NOT EXISTS idx_jobs_key_created ON jobs(idempotency_key, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_jobs_agent_queued ON jobs(agent_id, created_at) WHERE status = 'queued';
CREATE INDEX IF NOT EXISTS idx_jobs_running_lease ON jobs(lock_expires_at) WHERE status = 'running';

CREATE TABLE IF NOT EXISTS audit_log (
    id BIGSERIAL PRIMARY KEY,
    actor_id BIGINT,
    action TEXT NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL,
    hash_prev TEXT,
    hash_current TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    last_heartbeat_ip TEXT,
    metadata JSONB NOT NULL DEFAULT '{}',
    disk_scan_interval_seconds INTEGER NOT NULL DEFAULT 180,
    disk_warning_percent INTEGER NOT NULL DEFAULT 85,
    disk_hard_block_percent INTEGER NOT NULL DEFAULT 120,
    disk_protection_threshold_percent DOUBLE PRECISION NOT NULL DEFAULT 5,
    disk_protection_override_until TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS firewall_states (
    agent_id TEXT PRIMARY KEY REFERENCES agents(id) ON DELETE CASCADE,
    rules JSONB NOT NULL DEFAULT '[]',
    revision INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS instances (
    id BIGSERIAL PRIMARY KEY,
    customer_id BIGINT NOT NULL,
    node_id TEXT NOT NULL REFERENCES agents(id),
    status TEXT NOT NULL DEFAULT 'provisioning',
    update_policy TEXT NOT NULL DEFAULT 'manual',
    locked_build_id TEXT,
    locked_version TEXT,
    instance_dir TEXT,
    disk_state TEXT NOT NULL DEFAULT 'ok',
    disk_used_bytes BIGINT NOT NULL DEFAULT 0,
    disk_limit_bytes BIGINT NOT NULL DEFAULT 0,
    disk_last_scanned_at TIMESTAMPTZ,
    disk_scan_error TEXT,
    template_requirements JSONB NOT NULL DEFAULT '{}',
    required_ports JSONB NOT NULL DEFAULT '[]',
    query_status_cache JSONB NOT NULL DEFAULT '{}',
    query_checked_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS port_blocks (
    id BIGSERIAL PRIMARY KEY,
    agent_id TEXT NOT NULL REFERENCES agents(id),
    instance_id BIGINT REFERENCES instances(id) ON DELETE SET NULL,
    ports INTEGER[] NOT NULL
);

CREATE TABLE IF NOT EXISTS instance_schedules (
    id BIGSERIAL PRIMARY KEY,
    instance_id BIGINT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
    action TEXT NOT NULL CHECK (action IN ('start', 'stop', 'restart', 'update', 'backup')),
    cron_expression TEXT NOT NULL,
    time_zone TEXT NOT NULL DEFAULT 'UTC',
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    last_queued_at TIMESTAMPTZ,
    backup_definition_id BIGINT,
    retention_days INTEGER,
    retention_count INTEGER
);

CREATE TABLE IF NOT EXISTS public_servers (
    id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    game_key TEXT NOT NULL,
    ip TEXT NOT NULL,
    port INTEGER NOT NULL,
    query_type TEXT NOT NULL,
    query_port INTEGER,
    agent_id TEXT NOT NULL REFERENCES agents(id),
    check_interval_seconds INTEGER NOT NULL DEFAULT 60,
    status_cache JSONB NOT NULL DEFAULT '{}',
    last_checked_at TIMESTAMPTZ,
    next_check_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_public_servers_next_check ON public_servers(next_check_at NULLS FIRST);

CREATE TABLE IF NOT EXISTS voice_nodes (
    id BIGSERIAL PRIMARY KEY,
    product TEXT NOT NULL CHECK (product IN ('ts3', 'ts6', 'sinusbot')),
    agent_id TEXT NOT NULL REFERENCES agents(id),
    install_status TEXT NOT NULL DEFAULT 'pending',
    installed_version TEXT,
    running BOOLEAN NOT NULL DEFAULT FALSE,
    last_error TEXT,
    client_installed BOOLEAN NOT NULL DEFAULT FALSE,
    client_version TEXT,
    client_path TEXT
);

CREATE TABLE IF NOT EXISTS voice_instances (
    id BIGSERIAL PRIMARY KEY,
    product TEXT NOT NULL CHECK (product IN ('ts3', 'ts6')),
    status TEXT NOT NULL DEFAULT 'provisioning'
);

CREATE TABLE IF NOT EXISTS virtual_servers (
    id BIGSERIAL PRIMARY KEY,
    product TEXT NOT NULL CHECK (product IN ('ts3', 'ts6')),
    status TEXT NOT NULL DEFAULT 'provisioning',
    sid INTEGER,
    voice_port INTEGER,
    filetransfer_port INTEGER
);

CREATE TABLE IF NOT EXISTS voice_tokens (
    id BIGSERIAL PRIMARY KEY,
    virtual_server_id BIGINT NOT NULL REFERENCES virtual_servers(id) ON DELETE CASCADE,
    product TEXT NOT NULL,
    token TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'owner',
    active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deactivated_at TIMESTAMPTZ
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_voice_tokens_one_active
    ON voice_tokens(virtual_server_id) WHERE active;

CREATE TABLE IF NOT EXISTS admin_users (
    id BIGSERIAL PRIMARY KEY,
    ssh_public_key TEXT,
    ssh_public_key_pending TEXT
);
"""

async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(MIGRATION)
        print("Control plane schema applied")

        # Verify
        count = await conn.fetchval(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ANY($1)",
            ["jobs", "audit_log", "agents", "instances", "firewall_states"],
        )
        print(f"Core tables present: {count}/5")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
