from pydantic import BaseModel
from typing import Optional


class ProductInfo(BaseModel):
    name: str
    brand: Optional[str] = None
    ingredients_text: Optional[str] = None
    image_url: Optional[str] = None
    barcode: str


class LookupResponse(BaseModel):
    found: bool
    source: Optional[str] = None
    product: Optional[ProductInfo] = None
