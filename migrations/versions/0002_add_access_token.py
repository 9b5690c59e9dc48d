"""Store access token and expiry on users

Revision ID: 8f2e4b6a1d93
Revises: 3c1d9a7e5b20
Create Date: 2023-07-07 22:53:59.000000

Existing rows get an empty token that expired at -infinity, so the first
run refreshes them.
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

revision: str = "8f2e4b6a1d93"
down_revision: str = "3c1d9a7e5b20"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("users", sa.Column("access_token", sa.Text(), nullable=True))
    op.add_column(
        "users",
        sa.Column("expiry_timestamp", sa.DateTime(timezone=True), nullable=True),
    )
    op.execute(
        "UPDATE users SET access_token = '', expiry_timestamp = '-infinity' "
        "WHERE access_token IS NULL"
    )
    op.alter_column("users", "access_token", nullable=False)
    op.alter_column("users", "expiry_timestamp", nullable=False)


def downgrade() -> None:
    op.drop_column("users", "expiry_timestamp")
    op.drop_column("users", "access_token")
