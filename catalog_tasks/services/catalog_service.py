# catalog_tasks/services/catalog_service.py

import asyncio
import logging
import re
import unicodedata
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

ENTITY_KINDS = ("brand", "category", "purpose")


class CatalogError(Exception):
	pass


class CatalogConflictError(CatalogError):
	pass


class CatalogNotFoundError(CatalogError):
	pass


def create_slug(name: str) -> str:
	"""Lower-case, ASCII-only, dash separated identifier derived from a name"""
	text = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
	text = re.sub(r"[*+~.()'\"!:@]", "", text.lower())
	return re.sub(r"[^a-z0-9]+", "-", text).strip("-")


def _now() -> str:
	return datetime.now(timezone.utc).isoformat()


@dataclass
class NamedEntity:
	id: str
	name: str
	createdAt: str = field(default_factory=_now)


@dataclass
class ProductImage:
	filename: str
	contentType: Optional[str]
	size: int


@dataclass
class Product:
	id: str
	name: str
	categoryId: Optional[str] = None
	brandId: Optional[str] = None
	purposeId: Optional[str] = None
	images: List[ProductImage] = field(default_factory=list)
	createdAt: str = field(default_factory=_now)
	updatedAt: str = field(default_factory=_now)


class CatalogService:
	"""In-memory stand-in for the relational catalog.

	Each mutation runs under one lock, which plays the role of the database
	transaction: the uniqueness check and the write happen atomically.
	"""

	def __init__(self):
		self._entities: Dict[str, Dict[str, NamedEntity]] = {kind: {} for kind in ENTITY_KINDS}
		self._products: Dict[str, Product] = {}
		self._lock = asyncio.Lock()

	async def create_entity(self, kind: str, name: str) -> Dict[str, Any]:
		if kind not in self._entities:
			raise ValueError(f"Unknown catalog entity: {kind}")

		async with self._lock:
			table = self._entities[kind]
			slug = create_slug(name)
			if any(e.name == name for e in table.values()) or slug in table:
				raise CatalogConflictError(f"{kind.capitalize()} name already exists.")
			entity = NamedEntity(id=slug, name=name)
			table[slug] = entity

		logger.info(f"Created {kind} {entity.id}")
		return asdict(entity)

	async def list_entities(self, kind: str) -> List[Dict[str, Any]]:
		return [asdict(e) for e in sorted(self._entities[kind].values(), key=lambda e: e.name)]

	async def create_product(
			self,
			name: str,
			image: ProductImage,
			category_id: Optional[str] = None,
			brand_id: Optional[str] = None,
			purpose_id: Optional[str] = None,
	) -> Dict[str, Any]:
		async with self._lock:
			slug = create_slug(name)
			if any(p.name == name for p in self._products.values()):
				raise CatalogConflictError("Product name must be unique.")
			if slug in self._products:
				raise CatalogConflictError("Product slug (from name) already exists.")

			product = Product(
				id=slug,
				name=name,
				categoryId=category_id or None,
				brandId=brand_id or None,
				purposeId=purpose_id or None,
				images=[image],
			)
			self._products[slug] = product

		logger.info(f"Created product {product.id}")
		return asdict(product)

	async def rename_product(self, product_id: str, new_name: str) -> Dict[str, Any]:
		"""Re-key a product under the slug of its new name, keeping its images"""
		async with self._lock:
			old = self._products.get(product_id)
			if old is None:
				raise CatalogNotFoundError("Product not found.")
			if old.name == new_name:
				return asdict(old)

			new_slug = create_slug(new_name)
			if any(p.name == new_name or p.id == new_slug for p in self._products.values() if p.id != product_id):
				raise CatalogConflictError("New product name or slug already exists.")

			renamed = replace(old, id=new_slug, name=new_name, updatedAt=_now())
			del self._products[product_id]
			self._products[new_slug] = renamed

		logger.info(f"Renamed product {product_id} -> {new_slug}")
		return asdict(renamed)

	async def list_products(self) -> List[Dict[str, Any]]:
		products = sorted(self._products.values(), key=lambda p: p.createdAt, reverse=True)
		return [asdict(p) for p in products]

	async def counts(self) -> Dict[str, int]:
		return {
			"productCount": len(self._products),
			"brandCount": len(self._entities["brand"]),
			"categoryCount": len(self._entities["category"]),
			"purposeCount": len(self._entities["purpose"]),
		}
