"""DB models and async session helpers for the Statement Importer."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from app.core.utils import new_id, utcnow

Base = declarative_base()


class ImportBatch(Base):
    """A user-initiated group of files submitted for import together."""

    __tablename__ = "import_batches"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    import_type = Column(String, nullable=False)
    statement_type = Column(String, nullable=True)
    source_format = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    total_files = Column(Integer, nullable=False)
    processed_files = Column(Integer, nullable=False, default=0)
    successful_files = Column(Integer, nullable=False, default=0)
    failed_files = Column(Integer, nullable=False, default=0)
    duplicate_files = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    estimated_completion_at = Column(DateTime(timezone=True), nullable=True)
    errors = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ImportBatchItem(Base):
    """One file within a batch, tracked through its own status lifecycle."""

    __tablename__ = "import_batch_items"
    id = Column(String, primary_key=True, default=new_id)
    batch_id = Column(String, ForeignKey("import_batches.id"), nullable=False, index=True)
    document_id = Column(String, nullable=True)
    file_name = Column(String, nullable=False)
    file_url = Column(String, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="pending")
    order = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    duplicate_of_document_id = Column(String, nullable=True)
    duplicate_match_type = Column(String, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Document(Base):
    """An uploaded source file and its extraction metadata."""

    __tablename__ = "documents"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    document_type = Column(String, nullable=False)
    file_format = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    file_url = Column(String, nullable=False)
    file_size_bytes = Column(Integer, nullable=True)
    content_hash = Column(String, nullable=True, index=True)
    mime_type = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    import_batch_id = Column(String, nullable=True)
    extraction_method = Column(String, nullable=True)
    extraction_confidence = Column(Float, nullable=True)
    extraction_errors = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class Receipt(Base):
    """Fields extracted from a receipt image."""

    __tablename__ = "receipts"
    id = Column(String, primary_key=True, default=new_id)
    document_id = Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    merchant_name = Column(String, nullable=True)
    date = Column(DateTime(timezone=True), nullable=True)
    total_amount = Column(String, nullable=True)
    currency = Column(String, nullable=True)
    category_id = Column(String, nullable=True)
    category_name = Column(String, nullable=True)
    business_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class BankStatement(Base):
    """A parsed bank or credit card statement."""

    __tablename__ = "bank_statements"
    id = Column(String, primary_key=True, default=new_id)
    document_id = Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    statement_type = Column(String, nullable=True)
    currency = Column(String, nullable=False, default="USD")
    transaction_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class BankStatementTransaction(Base):
    """A normalized, categorized statement line."""

    __tablename__ = "bank_statement_transactions"
    id = Column(String, primary_key=True, default=new_id)
    bank_statement_id = Column(String, ForeignKey("bank_statements.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    transaction_date = Column(DateTime(timezone=True), nullable=True)
    posted_date = Column(DateTime(timezone=True), nullable=True)
    description = Column(Text, nullable=False, default="")
    merchant_name = Column(String, nullable=True)
    reference_number = Column(String, nullable=True)
    amount = Column(String, nullable=False)
    balance = Column(String, nullable=True)
    currency = Column(String, nullable=False, default="USD")
    category_id = Column(String, nullable=True)
    category_name = Column(String, nullable=True)
    business_id = Column(String, nullable=True)
    categorization_method = Column(String, nullable=True)
    categorization_confidence = Column(Float, nullable=True)
    order = Column(Integer, nullable=False, default=0)
    raw_json = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Category(Base):
    """A spending or income category, either system-wide or owned by a user."""

    __tablename__ = "categories"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default="user")
    user_id = Column(String, nullable=True, index=True)
    usage_scope = Column(String, nullable=False, default="both")
    transaction_type = Column(String, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class CategoryRule(Base):
    """An owner-authored rule mapping a merchant/description pattern to a category."""

    __tablename__ = "category_rules"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    category_id = Column(String, ForeignKey("categories.id"), nullable=False)
    business_id = Column(String, nullable=True)
    field = Column(String, nullable=False)
    match_type = Column(String, nullable=False)
    value = Column(String, nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class UserSettings(Base):
    """Owner preferences used for category scoping and AI context."""

    __tablename__ = "user_settings"
    user_id = Column(String, primary_key=True)
    usage_type = Column(String, nullable=False, default="personal")
    country = Column(String, nullable=True)
    currency = Column(String, nullable=False, default="USD")


class Business(Base):
    """A business owned by a user, assignable to transactions."""

    __tablename__ = "businesses"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)


class StatementMapping(Base):
    """A remembered column mapping for a spreadsheet layout."""

    __tablename__ = "statement_mappings"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False)
    header_signature = Column(String, nullable=False)
    mapping_json = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_statement_mappings_owner_signature", "user_id", "header_signature", unique=True),)


class LlmLog(Base):
    """Token and cost accounting for one completion call."""

    __tablename__ = "llm_logs"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=True, index=True)
    entity_id = Column(String, nullable=True)
    entity_type = Column(String, nullable=True)
    provider = Column(String, nullable=False)
    model = Column(String, nullable=False)
    prompt_type = Column(String, nullable=False)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    cost_usd = Column(String, nullable=False, default="0")
    duration_ms = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


def get_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the configured database URL."""
    if url.startswith("sqlite") and ":memory:" in url:
        # in-memory sqlite must share one connection across sessions
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url, echo=echo)


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory shared by repositories."""
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Open a session, commit on success and roll back on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
