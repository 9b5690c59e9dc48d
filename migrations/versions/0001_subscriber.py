"""Users and run ledger

Revision ID: 3c1d9a7e5b20
Revises:
Create Date: 2023-05-31 11:49:38.000000

users holds each enrolled Spotify account and its refresh token.
botm_runs records one row per monthly run; user_botm_runs records which
users completed a run.
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c1d9a7e5b20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("spotify_id", sa.Text(), primary_key=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
    )

    op.create_table(
        "botm_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("date", sa.Date(), nullable=False),
    )

    op.create_table(
        "user_botm_runs",
        sa.Column(
            "spotify_id",
            sa.Text(),
            sa.ForeignKey("users.spotify_id"),
            nullable=False,
        ),
        sa.Column(
            "botm_run_id",
            sa.Integer(),
            sa.ForeignKey("botm_runs.id"),
            nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("user_botm_runs")
    op.drop_table("botm_runs")
    op.drop_table("users")
