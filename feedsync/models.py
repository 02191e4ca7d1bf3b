# feedsync/models.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _document_id() -> str:
    return uuid4().hex


class Supplier(Base):
    __tablename__ = "suppliers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    products_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_hash: Mapped[Optional[str]] = mapped_column(String(64))
    last_sync_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_sync_status: Mapped[Optional[str]] = mapped_column(String(32))
    last_sync_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class MediaAsset(Base):
    __tablename__ = "media_assets"
    __table_args__ = (sa.Index("idx_media_assets_source_url", "source_url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    hash: Mapped[Optional[str]] = mapped_column(String(64))
    ext: Mapped[Optional[str]] = mapped_column(String(16))
    mime: Mapped[Optional[str]] = mapped_column(String(64))
    size_kb: Mapped[Optional[float]] = mapped_column(Float)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    source_url: Mapped[Optional[str]] = mapped_column(Text)
    bucket_key: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("supplier_id", "a_number", name="uq_products_supplier_a_number"),
        sa.Index("idx_products_supplier", "supplier_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[str] = mapped_column(String(32), unique=True, default=_document_id, nullable=False)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False)
    a_number: Mapped[str] = mapped_column(String(64), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(64))
    supplier_sku: Mapped[Optional[str]] = mapped_column(String(128))
    supplier_name: Mapped[Optional[str]] = mapped_column(Text)
    brand: Mapped[Optional[str]] = mapped_column(Text)
    name: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    description: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    short_description: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    material: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    model_name: Mapped[Optional[str]] = mapped_column(Text)
    country_of_origin: Mapped[Optional[str]] = mapped_column(String(64))
    price_tiers: Mapped[list[Any]] = mapped_column(JSON, default=list)
    dimensions: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    total_variants_count: Mapped[int] = mapped_column(Integer, default=0)
    available_colors: Mapped[list[Any]] = mapped_column(JSON, default=list)
    available_sizes: Mapped[list[Any]] = mapped_column(JSON, default=list)
    family_hash: Mapped[Optional[str]] = mapped_column(String(64))
    source_hash: Mapped[Optional[str]] = mapped_column(String(64))
    main_image_id: Mapped[Optional[int]] = mapped_column(ForeignKey("media_assets.id", ondelete="SET NULL"))
    gallery: Mapped[list[Any]] = mapped_column(JSON, default=list)
    gemini_file_uri: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_synced: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ProductVariant(Base):
    __tablename__ = "product_variants"
    __table_args__ = (
        sa.Index("idx_variants_product", "product_id"),
        sa.Index("idx_variants_product_color", "product_id", "color"),
        sa.Index("idx_variants_product_color_key", "product_id", "color_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[str] = mapped_column(String(32), unique=True, default=_document_id, nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    sku: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text)
    description: Mapped[Optional[str]] = mapped_column(Text)
    color: Mapped[Optional[str]] = mapped_column(String(128))
    hex_color: Mapped[Optional[str]] = mapped_column(String(16))
    supplier_color_code: Mapped[Optional[str]] = mapped_column(String(64))
    supplier_search_color: Mapped[Optional[str]] = mapped_column(String(64))
    # the color group a variant belongs to: supplier color code, else color name
    color_key: Mapped[Optional[str]] = mapped_column(String(128))
    size: Mapped[Optional[str]] = mapped_column(String(64))
    sizes: Mapped[list[Any]] = mapped_column(JSON, default=list)
    material: Mapped[Optional[str]] = mapped_column(Text)
    country_of_origin: Mapped[Optional[str]] = mapped_column(String(64))
    dimensions_length: Mapped[Optional[float]] = mapped_column(Float)
    dimensions_width: Mapped[Optional[float]] = mapped_column(Float)
    dimensions_height: Mapped[Optional[float]] = mapped_column(Float)
    dimensions_diameter: Mapped[Optional[float]] = mapped_column(Float)
    weight: Mapped[Optional[float]] = mapped_column(Float)
    embroidery_sizes: Mapped[Optional[str]] = mapped_column(Text)
    imprint_required: Mapped[bool] = mapped_column(Boolean, default=False)
    is_fragile: Mapped[bool] = mapped_column(Boolean, default=False)
    is_service_base: Mapped[bool] = mapped_column(Boolean, default=False)
    meta_name: Mapped[Optional[str]] = mapped_column(Text)
    meta_description: Mapped[Optional[str]] = mapped_column(Text)
    meta_keywords: Mapped[Optional[str]] = mapped_column(Text)
    is_primary_for_color: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    variant_hash: Mapped[Optional[str]] = mapped_column(String(64))
    primary_image_id: Mapped[Optional[int]] = mapped_column(ForeignKey("media_assets.id", ondelete="SET NULL"))
    gallery: Mapped[list[Any]] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


STAGES = ("promidata", "images", "meilisearch", "gemini")


class SyncSession(Base):
    __tablename__ = "sync_sessions"
    __table_args__ = (
        sa.Index("idx_sync_sessions_supplier", "supplier_code", "started_at"),
        sa.Index("idx_sync_sessions_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    supplier_id: Mapped[Optional[int]] = mapped_column(ForeignKey("suppliers.id", ondelete="SET NULL"))
    supplier_code: Mapped[str] = mapped_column(String(32), nullable=False)
    supplier_name: Mapped[Optional[str]] = mapped_column(Text)
    trigger: Mapped[str] = mapped_column(String(32), default="manual", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)

    promidata_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    promidata_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    promidata_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    promidata_products_found: Mapped[int] = mapped_column(Integer, default=0)
    promidata_families_total: Mapped[int] = mapped_column(Integer, default=0)
    promidata_families_created: Mapped[int] = mapped_column(Integer, default=0)
    promidata_families_updated: Mapped[int] = mapped_column(Integer, default=0)
    promidata_families_unchanged: Mapped[int] = mapped_column(Integer, default=0)
    promidata_families_failed: Mapped[int] = mapped_column(Integer, default=0)
    promidata_skipped_unchanged: Mapped[int] = mapped_column(Integer, default=0)
    promidata_hash_efficiency: Mapped[float] = mapped_column(Float, default=0.0)

    images_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    images_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    images_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    images_total: Mapped[int] = mapped_column(Integer, default=0)
    images_uploaded: Mapped[int] = mapped_column(Integer, default=0)
    images_deduplicated: Mapped[int] = mapped_column(Integer, default=0)
    images_failed: Mapped[int] = mapped_column(Integer, default=0)

    meilisearch_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    meilisearch_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    meilisearch_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    meilisearch_total: Mapped[int] = mapped_column(Integer, default=0)
    meilisearch_indexed: Mapped[int] = mapped_column(Integer, default=0)
    meilisearch_failed: Mapped[int] = mapped_column(Integer, default=0)

    gemini_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    gemini_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    gemini_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    gemini_total: Mapped[int] = mapped_column(Integer, default=0)
    gemini_synced: Mapped[int] = mapped_column(Integer, default=0)
    gemini_skipped: Mapped[int] = mapped_column(Integer, default=0)
    gemini_failed: Mapped[int] = mapped_column(Integer, default=0)

    errors: Mapped[list[Any]] = mapped_column(JSON, default=list)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    error_count: Mapped[int] = mapped_column(Integer, default=0)

    verification_status: Mapped[Optional[str]] = mapped_column(String(16))
    verification_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class SourceDocument(Base):
    """Last seen manifest hash per feed document, keyed by its SKU."""
    __tablename__ = "source_documents"
    __table_args__ = (
        UniqueConstraint("supplier_id", "sku", name="uq_source_documents_supplier_sku"),
        sa.Index("idx_source_documents_family", "supplier_id", "a_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False)
    sku: Mapped[str] = mapped_column(String(128), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    a_number: Mapped[Optional[str]] = mapped_column(String(64))
    url: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
