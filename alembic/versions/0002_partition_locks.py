from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "partition_locks",
        sa.Column("ground_id", sa.String(), primary_key=True),
        sa.Column("booking_date", sa.Date(), primary_key=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade():
    op.drop_table("partition_locks")
