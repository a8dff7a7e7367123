# schemas/catalog.py
from typing import Optional

from pydantic import BaseModel, Field


class EntityCreate(BaseModel):
    name: Optional[str] = None
    taskId: Optional[str] = None


class ProductRename(BaseModel):
    newName: Optional[str] = None
    taskId: Optional[str] = None
    productId: Optional[str] = Field(None, description="Ignored, the path id wins")


class DashboardStats(BaseModel):
    productCount: int
    brandCount: int
    categoryCount: int
    purposeCount: int
