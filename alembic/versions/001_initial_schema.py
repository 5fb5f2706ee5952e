"""Initial schema for scenario branching

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ==========================================================================
    # ENUM TYPES
    # ==========================================================================
    op.execute("""
        CREATE TYPE scenario_type AS ENUM ('baseline', 'branch', 'sandbox')
    """)
    op.execute("""
        CREATE TYPE scenario_status AS ENUM ('draft', 'active', 'archived')
    """)
    op.execute("""
        CREATE TYPE delta_entity_type AS ENUM ('project', 'assignment')
    """)
    op.execute("""
        CREATE TYPE delta_operation AS ENUM ('add', 'override', 'remove')
    """)

    # ==========================================================================
    # SCENARIOS
    # ==========================================================================
    op.execute("""
        CREATE TABLE scenarios (
            id VARCHAR(64) PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            scenario_type scenario_type NOT NULL,
            status scenario_status NOT NULL DEFAULT 'draft',
            parent_scenario_id VARCHAR(64) REFERENCES scenarios(id),
            description TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_scenarios_baseline_parent CHECK (
                (scenario_type = 'baseline') = (parent_scenario_id IS NULL)
            ),
            CONSTRAINT ck_scenarios_not_self_parent CHECK (parent_scenario_id <> id)
        )
    """)
    op.execute("CREATE INDEX idx_scenarios_parent_id ON scenarios(parent_scenario_id)")
    op.execute("CREATE INDEX idx_scenarios_type ON scenarios(scenario_type)")

    # ==========================================================================
    # SCENARIO DELTAS
    # ==========================================================================
    op.execute("""
        CREATE TABLE scenario_deltas (
            id SERIAL PRIMARY KEY,
            scenario_id VARCHAR(64) NOT NULL REFERENCES scenarios(id) ON DELETE CASCADE,
            entity_type delta_entity_type NOT NULL,
            entity_id VARCHAR(64) NOT NULL,
            operation delta_operation NOT NULL,
            payload JSONB,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_scenario_deltas_entity UNIQUE (scenario_id, entity_type, entity_id),
            CONSTRAINT ck_scenario_deltas_payload CHECK (
                (operation = 'remove') = (payload IS NULL)
            )
        )
    """)
    op.execute("CREATE INDEX idx_scenario_deltas_scenario_id ON scenario_deltas(scenario_id)")
    op.execute("CREATE INDEX idx_scenario_deltas_updated_at ON scenario_deltas(scenario_id, updated_at DESC)")
    op.execute("CREATE INDEX idx_scenario_deltas_payload ON scenario_deltas USING GIN (payload)")


def downgrade() -> None:
    # Drop tables (reverse order of creation due to FK constraints)
    op.execute("DROP TABLE IF EXISTS scenario_deltas")
    op.execute("DROP TABLE IF EXISTS scenarios")

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS delta_operation")
    op.execute("DROP TYPE IF EXISTS delta_entity_type")
    op.execute("DROP TYPE IF EXISTS scenario_status")
    op.execute("DROP TYPE IF EXISTS scenario_type")
