"""Create slaps table.

Revision ID: 0002_create_slaps
Revises: 0001_create_guilds
Create Date: 2021-07-20 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_create_slaps"
down_revision = "0001_create_guilds"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "slaps",
        sa.Column("sentence", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("guild", sa.BigInteger(), nullable=False),
        sa.Column("offender", sa.BigInteger(), nullable=False),
        sa.Column("enforcer", sa.BigInteger(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_slaps_guild_offender",
        "slaps",
        ["guild", "offender"],
    )


def downgrade() -> None:
    op.drop_index("ix_slaps_guild_offender", table_name="slaps")
    op.drop_table("slaps")
