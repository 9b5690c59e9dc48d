"""Unique run dates and user/run pairs

Revision ID: b7d05e3f9a41
Revises: 8f2e4b6a1d93
Create Date: 2024-06-02 10:15:00.000000

start_run is create-if-absent on botm_runs.date and commit is
insert-if-absent on (spotify_id, botm_run_id); both need a unique key.
Duplicates left by earlier concurrent runs are merged into the lowest run id
before the constraints are added.

Written manually (not via autogenerate) consistent with project migration policy.
"""

from typing import Sequence, Union

from alembic import op

revision: str = "b7d05e3f9a41"
down_revision: str = "8f2e4b6a1d93"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Point commits of duplicate runs at the first run of the same date
    op.execute(
        "UPDATE user_botm_runs u SET botm_run_id = k.keep_id "
        "FROM (SELECT id, MIN(id) OVER (PARTITION BY date) AS keep_id FROM botm_runs) k "
        "WHERE u.botm_run_id = k.id AND k.id <> k.keep_id"
    )
    op.execute(
        "DELETE FROM user_botm_runs a USING user_botm_runs b "
        "WHERE a.ctid < b.ctid "
        "AND a.spotify_id = b.spotify_id AND a.botm_run_id = b.botm_run_id"
    )
    op.execute(
        "DELETE FROM botm_runs a USING botm_runs b "
        "WHERE a.date = b.date AND a.id > b.id"
    )

    op.create_unique_constraint("uq_botm_runs_date", "botm_runs", ["date"])
    op.create_primary_key(
        "pk_user_botm_runs", "user_botm_runs", ["spotify_id", "botm_run_id"]
    )
    op.create_index("ix_users_active", "users", ["active"])


def downgrade() -> None:
    op.drop_index("ix_users_active", table_name="users")
    op.drop_constraint("pk_user_botm_runs", "user_botm_runs", type_="primary")
    op.drop_constraint("uq_botm_runs_date", "botm_runs", type_="unique")
