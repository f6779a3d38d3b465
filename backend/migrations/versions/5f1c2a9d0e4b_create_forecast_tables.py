from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5f1c2a9d0e4b"
down_revision = None
branch_labels = None
depends_on = None

JSON_PAYLOAD = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _fk() -> sa.Column:
    return sa.Column(
        "forecast_id",
        sa.String(length=10),
        sa.ForeignKey("forecasts.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "forecasts",
        sa.Column("id", sa.String(length=10), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reference_price", sa.Float(), nullable=False),
        sa.Column("data_health_grade", sa.String(length=16), nullable=False),
        sa.Column("data_health_reason", sa.Text(), nullable=True),
        sa.Column("consensus_strength", sa.Integer(), nullable=False),
        sa.Column("divergence_summary", JSON_PAYLOAD, nullable=False),
    )
    op.create_index("ix_forecasts_created_at", "forecasts", ["created_at"])

    op.create_table(
        "forecast_windows",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk(),
        sa.Column("window", sa.String(length=8), nullable=False),
        sa.Column("prob_up", sa.Float(), nullable=False),
        sa.Column("prob_down", sa.Float(), nullable=False),
        sa.Column("prob_flat", sa.Float(), nullable=False),
        sa.Column("prob_move_1pct", sa.Float(), nullable=False),
        sa.Column("prob_move_2pct", sa.Float(), nullable=False),
        sa.Column("expected_range_pct", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        sa.Column("main_conclusion", sa.Text(), nullable=False),
        sa.Column("top_factors", JSON_PAYLOAD, nullable=False),
        sa.Column("invalidation_conditions", JSON_PAYLOAD, nullable=False),
        sa.UniqueConstraint("forecast_id", "window", name="uq_forecast_window"),
    )

    op.create_table(
        "model_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk(),
        sa.Column("model_name", sa.String(length=64), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_reason", sa.Text(), nullable=True),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("raw_text", sa.Text(), nullable=True),
        sa.UniqueConstraint("forecast_id", "model_name", name="uq_model_run"),
    )

    op.create_table(
        "model_window_predictions",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk(),
        sa.Column("model_name", sa.String(length=64), nullable=False),
        sa.Column("window", sa.String(length=8), nullable=False),
        sa.Column("prob_up", sa.Float(), nullable=False),
        sa.Column("prob_down", sa.Float(), nullable=False),
        sa.Column("prob_flat", sa.Float(), nullable=False),
        sa.Column("prob_move_1pct", sa.Float(), nullable=False),
        sa.Column("prob_move_2pct", sa.Float(), nullable=False),
        sa.Column("expected_range_pct", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        sa.Column("main_conclusion", sa.Text(), nullable=True),
        sa.UniqueConstraint("forecast_id", "model_name", "window", name="uq_model_window_prediction"),
    )

    op.create_table(
        "settlements",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk(),
        sa.Column("window", sa.String(length=8), nullable=False),
        sa.Column("actual_return_pct", sa.Float(), nullable=False),
        sa.Column("actual_direction", sa.String(length=8), nullable=False),
        sa.Column("predicted_direction", sa.String(length=8), nullable=False),
        sa.Column("is_hit", sa.Boolean(), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_price", sa.Float(), nullable=False),
        sa.Column("end_price", sa.Float(), nullable=False),
        sa.UniqueConstraint("forecast_id", "window", name="uq_settlement"),
    )
    op.create_index("ix_settlements_settled_at", "settlements", ["settled_at"])

    op.create_table(
        "model_settlements",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk(),
        sa.Column("window", sa.String(length=8), nullable=False),
        sa.Column("model_name", sa.String(length=64), nullable=False),
        sa.Column("actual_return_pct", sa.Float(), nullable=False),
        sa.Column("actual_direction", sa.String(length=8), nullable=False),
        sa.Column("predicted_direction", sa.String(length=8), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        sa.Column("is_hit", sa.Boolean(), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_price", sa.Float(), nullable=False),
        sa.Column("end_price", sa.Float(), nullable=False),
        sa.UniqueConstraint("forecast_id", "window", "model_name", name="uq_model_settlement"),
    )
    op.create_index("ix_model_settlements_settled_at", "model_settlements", ["settled_at"])

    op.create_table(
        "market_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "forecast_id",
            sa.String(length=10),
            sa.ForeignKey("forecasts.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("price_change_1h", sa.Float(), nullable=True),
        sa.Column("price_change_24h", sa.Float(), nullable=True),
        sa.Column("volume_24h", sa.Float(), nullable=True),
        sa.Column("funding_rate", sa.Float(), nullable=True),
        sa.Column("open_interest", sa.Float(), nullable=True),
        sa.Column("order_book_imbalance", sa.Float(), nullable=True),
        sa.Column("realized_vol", sa.Float(), nullable=True),
        sa.Column("fear_greed", sa.Integer(), nullable=True),
        sa.Column("snapshot_time", sa.String(length=40), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("market_snapshots")
    op.drop_index("ix_model_settlements_settled_at", table_name="model_settlements")
    op.drop_table("model_settlements")
    op.drop_index("ix_settlements_settled_at", table_name="settlements")
    op.drop_table("settlements")
    op.drop_table("model_window_predictions")
    op.drop_table("model_runs")
    op.drop_table("forecast_windows")
    op.drop_index("ix_forecasts_created_at", table_name="forecasts")
    op.drop_table("forecasts")
