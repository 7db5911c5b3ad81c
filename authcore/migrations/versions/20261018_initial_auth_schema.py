"""Create the users table and the single-use token tables."""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_initial_auth_schema"
down_revision = None
branch_labels = None
depends_on = None

_TOKEN_TABLES = (
    ("email_verification_tokens", "verified_at"),
    ("password_reset_tokens", "used_at"),
    ("magic_link_tokens", "used_at"),
)


def upgrade() -> None:
    """Create accounts and one token table per purpose."""

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("company_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="customer"),
        sa.Column("email_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    for table, consumed_column in _TOKEN_TABLES:
        columns = [
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("user_id", sa.Uuid(), nullable=False),
            sa.Column("token_hash", sa.String(length=128), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column(consumed_column, sa.DateTime(timezone=True), nullable=True),
        ]
        if table == "email_verification_tokens":
            columns.append(sa.Column("email", sa.String(length=255), nullable=False))
        op.create_table(
            table,
            *columns,
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("token_hash"),
        )
        op.create_index(
            f"ix_{table}_user_active", table, ["user_id", consumed_column], unique=False
        )
        op.create_index(f"ix_{table}_expires_at", table, ["expires_at"], unique=False)


def downgrade() -> None:
    """Drop the token tables before the accounts they reference."""

    for table, _ in reversed(_TOKEN_TABLES):
        op.drop_index(f"ix_{table}_expires_at", table_name=table)
        op.drop_index(f"ix_{table}_user_active", table_name=table)
        op.drop_table(table)
    op.drop_table("users")
