"""Create guilds table.

Revision ID: 0001_create_guilds
Revises: 
Create Date: 2021-07-02 08:49:48
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_create_guilds"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "guilds",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("welcome_message", sa.String(length=2048), nullable=True),
        sa.Column("goodbye_message", sa.String(length=2048), nullable=True),
        sa.Column("advertise", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("admin_chan", sa.BigInteger(), nullable=True),
        sa.Column("poll_chans", postgresql.ARRAY(sa.BigInteger()), nullable=True),
        sa.Column(
            "priv_manager",
            postgresql.ARRAY(sa.BigInteger()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column(
            "priv_admin",
            postgresql.ARRAY(sa.BigInteger()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column(
            "priv_event",
            postgresql.ARRAY(sa.BigInteger()),
            nullable=False,
            server_default="{}",
        ),
    )


def downgrade() -> None:
    op.drop_table("guilds")
