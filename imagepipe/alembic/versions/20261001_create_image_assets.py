"""Create image_assets table.

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa

revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "image_assets",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("original_filename", sa.String(255), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("mime_type", sa.String(128), nullable=False),
        sa.Column("image_width", sa.Integer(), nullable=True),
        sa.Column("image_height", sa.Integer(), nullable=True),
        sa.Column("storage_path", sa.String(1024), nullable=False),
        sa.Column("storage_bucket", sa.String(64), nullable=False),
        sa.Column("public_url", sa.String(2048), nullable=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("image_purpose", sa.String(32), nullable=False, server_default="gallery"),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processing_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("alt_text", sa.String(500), nullable=True),
        sa.Column("caption", sa.String(1000), nullable=True),
        sa.Column("uploaded_by", sa.String(255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sa_orm_sentinel", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("storage_bucket", "storage_path", name="uq_image_assets_bucket_path"),
    )
    op.create_index("ix_image_assets_entity", "image_assets", ["entity_type", "entity_id"])
    op.create_index("ix_image_assets_image_purpose", "image_assets", ["image_purpose"])
    op.create_index("ix_image_assets_uploaded_by", "image_assets", ["uploaded_by"])
    op.create_index("ix_image_assets_deleted_at", "image_assets", ["deleted_at"])


def downgrade() -> None:
    op.drop_index("ix_image_assets_deleted_at", table_name="image_assets")
    op.drop_index("ix_image_assets_uploaded_by", table_name="image_assets")
    op.drop_index("ix_image_assets_image_purpose", table_name="image_assets")
    op.drop_index("ix_image_assets_entity", table_name="image_assets")
    op.drop_table("image_assets")
