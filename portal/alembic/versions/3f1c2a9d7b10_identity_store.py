"""identity store: users, subscriptions, configuration, terms, webhook events

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 09:12:04.118230+00:00

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3f1c2a9d7b10"
down_revision = None
branch_labels = None
depends_on = None


def _flag(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default=sa.text("0"))


def upgrade() -> None:
    # Timestamps are ISO-8601 UTC text, written by the application
    op.create_table(
        "users",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("email", sa.Text(), unique=True),  # payment / primary email, lower-cased
        sa.Column("discord_email", sa.Text()),
        sa.Column("username", sa.Text(), nullable=False, server_default=""),
        sa.Column("discord_id", sa.Text(), unique=True),
        sa.Column("avatar", sa.Text()),
        sa.Column("password_hash", sa.Text()),
        _flag("is_admin"),
        _flag("is_whitelisted"),
        _flag("has_manual_subscription"),
        sa.Column("subscription_id", sa.Text()),
        _flag("terms_accepted"),
        sa.Column("terms_accepted_at", sa.Text()),
        sa.Column("onboarding_step", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _flag("onboarding_completed"),
        sa.Column("verification_code", sa.Text(), unique=True),
        sa.Column("verification_code_expires_at", sa.Text()),
        sa.Column("created_at", sa.Text()),
        sa.Column("updated_at", sa.Text()),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("billing_customer_id", sa.Text()),
        sa.Column("billing_subscription_id", sa.Text(), nullable=False, unique=True),
        sa.Column("status", sa.Text(), nullable=False),  # active | trialing | past_due | unpaid | canceled
        sa.Column("plan", sa.Text(), nullable=False, server_default="monthly"),
        sa.Column("current_period_start", sa.Text()),
        sa.Column("current_period_end", sa.Text()),
        _flag("cancel_at_period_end"),
        sa.Column("canceled_at", sa.Text()),
        sa.Column("grace_period_end", sa.Text()),
        sa.Column("created_at", sa.Text()),
        sa.Column("updated_at", sa.Text()),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])

    op.create_table(
        "configuration",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("value", sa.Text()),
        sa.Column("description", sa.Text()),
        sa.Column("updated_at", sa.Text()),
    )

    op.create_table(
        "terms_acceptances",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("email", sa.Text()),
        sa.Column("username", sa.Text()),
        sa.Column("ip_address", sa.Text()),
        sa.Column("user_agent", sa.Text()),
        sa.Column("terms_version", sa.Text(), nullable=False),
        sa.Column("terms_version_date", sa.Text()),
        sa.Column("content_hash", sa.Text()),
        sa.Column("acceptance_method", sa.Text()),
        sa.Column("accepted_at", sa.Text(), nullable=False),
    )
    op.create_index("ix_terms_acceptances_user_id", "terms_acceptances", ["user_id"])

    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.Text(), primary_key=True),
        sa.Column("processed_at", sa.Text(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_terms_acceptances_user_id", table_name="terms_acceptances")
    op.drop_table("terms_acceptances")
    op.drop_table("configuration")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("users")
