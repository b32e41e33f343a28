from sqlalchemy import Column, String, Text, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any, Union

from knowledge_graph.models import utcnow

Base = declarative_base()


# SQLAlchemy Models
class KnowledgeEntityRecord(Base):
    """Authoritative row for a knowledge entity (record store)."""
    __tablename__ = "knowledge_entities"

    id = Column(String(255), primary_key=True, index=True)
    type = Column(String(32), index=True, nullable=False)  # product, category, brand, feature, customer, concept
    name = Column(String(500), index=True, nullable=False)
    description = Column(Text, default="")
    properties = Column(JSON, default=dict)  # price, category, brand, tags, rating, ...
    vector = Column(JSON, nullable=True)  # embedding, present once embedded

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_knowledge_entities_type_name", "type", "name"),
    )


# Pydantic Models for the domain feed
class CatalogItem(BaseModel):
    """
    One domain object consumed by the graph builder (e.g. a catalog product).

    Accepts both snake_case and the camelCase keys used by upstream feeds
    (isActive, isFeatured, salesCount).
    """
    id: Union[str, int]
    name: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    tags: List[str] = Field(default_factory=list)
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    sales_count: Optional[int] = Field(default=None, ge=0, alias="salesCount")
    is_active: bool = Field(default=True, alias="isActive")
    is_featured: bool = Field(default=False, alias="isFeatured")
    slug: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name cannot be blank")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value

    @property
    def source_id(self) -> str:
        return str(self.id)

