"""
Migration: Add workflow core tables.

Creates 5 tables:
1. job_transition_history - Append-only audit trail of job transitions
2. automation_rules - Versioned rule definitions (copy-on-write)
3. automation_executions - One row per rule evaluation
4. follow_up_sequences - Multi-step lead outreach, claimed by version CAS
5. scheduled_actions - Delayed rule actions waiting for the heartbeat

Enum columns are stored as VARCHAR holding the enum member name.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/fieldflow"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def run_migration():
    """Create all workflow core tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # TABLE 1: job_transition_history
        # =================================================================
        if table_exists(conn, "job_transition_history"):
            print("job_transition_history table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE job_transition_history (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(36) NOT NULL,
                    job_id VARCHAR(36) NOT NULL,
                    previous_state VARCHAR(17),
                    new_state VARCHAR(17) NOT NULL,
                    event_type VARCHAR(50),
                    actor_id VARCHAR(36),
                    actor_name VARCHAR(255),
                    reason TEXT,
                    event_metadata JSON,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_transition_history_job ON job_transition_history(tenant_id, job_id)
            """))
            print("Created job_transition_history table")

        # =================================================================
        # TABLE 2: automation_rules
        # =================================================================
        if table_exists(conn, "automation_rules"):
            print("automation_rules table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE automation_rules (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(36) NOT NULL,
                    name VARCHAR(255) NOT NULL,
                    description TEXT,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    test_mode BOOLEAN NOT NULL DEFAULT FALSE,
                    trigger JSON NOT NULL,
                    actions JSON NOT NULL,
                    constraints JSON,
                    lineage_id VARCHAR(36) NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    previous_version_id VARCHAR(36) REFERENCES automation_rules(id) ON DELETE SET NULL,
                    effective_date TIMESTAMP NOT NULL,
                    end_date TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_automation_rules_tenant_active ON automation_rules(tenant_id, is_active)
            """))
            conn.execute(text("""
                CREATE INDEX idx_automation_rules_lineage ON automation_rules(tenant_id, lineage_id)
            """))
            print("Created automation_rules table")

        # =================================================================
        # TABLE 3: automation_executions
        # =================================================================
        if table_exists(conn, "automation_executions"):
            print("automation_executions table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE automation_executions (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(36) NOT NULL,
                    rule_id VARCHAR(36) NOT NULL REFERENCES automation_rules(id) ON DELETE CASCADE,
                    rule_lineage_id VARCHAR(36) NOT NULL,
                    entity_type VARCHAR(50) NOT NULL,
                    entity_id VARCHAR(36) NOT NULL,
                    trigger_event VARCHAR(100) NOT NULL,
                    conditions_passed BOOLEAN NOT NULL DEFAULT FALSE,
                    actions_taken JSON,
                    suppression_reason TEXT,
                    is_test_mode BOOLEAN NOT NULL DEFAULT FALSE,
                    executed_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_automation_exec_rule ON automation_executions(tenant_id, rule_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_automation_exec_lineage_entity
                ON automation_executions(tenant_id, rule_lineage_id, entity_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_automation_exec_entity ON automation_executions(tenant_id, entity_type, entity_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_automation_exec_time ON automation_executions(tenant_id, executed_at)
            """))
            print("Created automation_executions table")

        # =================================================================
        # TABLE 4: follow_up_sequences
        # =================================================================
        if table_exists(conn, "follow_up_sequences"):
            print("follow_up_sequences table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE follow_up_sequences (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(36) NOT NULL,
                    lead_id VARCHAR(36) NOT NULL,
                    status VARCHAR(9) NOT NULL DEFAULT 'ACTIVE',
                    current_step INTEGER NOT NULL DEFAULT 0,
                    steps JSON NOT NULL,
                    next_step_at TIMESTAMP,
                    version INTEGER NOT NULL DEFAULT 0,
                    started_at TIMESTAMP NOT NULL,
                    paused_at TIMESTAMP,
                    completed_at TIMESTAMP,
                    cancelled_at TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_follow_up_tenant_lead ON follow_up_sequences(tenant_id, lead_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_follow_up_due ON follow_up_sequences(status, next_step_at)
            """))
            print("Created follow_up_sequences table")

        # =================================================================
        # TABLE 5: scheduled_actions
        # =================================================================
        if table_exists(conn, "scheduled_actions"):
            print("scheduled_actions table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE scheduled_actions (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(36) NOT NULL,
                    execution_id VARCHAR(36) NOT NULL REFERENCES automation_executions(id) ON DELETE CASCADE,
                    rule_id VARCHAR(36) NOT NULL,
                    entity_type VARCHAR(50) NOT NULL,
                    entity_id VARCHAR(36) NOT NULL,
                    entity_snapshot JSON,
                    action_type VARCHAR(100) NOT NULL,
                    action_config JSON,
                    status VARCHAR(8) NOT NULL DEFAULT 'PENDING',
                    due_at TIMESTAMP NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    executed_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_scheduled_actions_due ON scheduled_actions(status, due_at)
            """))
            conn.execute(text("""
                CREATE INDEX ix_scheduled_actions_execution_id ON scheduled_actions(execution_id)
            """))
            print("Created scheduled_actions table")

        conn.commit()
        print("\nWorkflow core migration completed successfully!")


if __name__ == "__main__":
    run_migration()
