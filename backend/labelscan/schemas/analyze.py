from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    # Wire format is camelCase (productName, presentIn, ...); Python side stays snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalyzeRequest(CamelModel):
    barcode: str = Field(..., pattern=r"^\d{8,14}$")
    known_title: Optional[str] = None


class DietVerdict(CamelModel):
    is_compliant: bool
    reason: Optional[str] = None
    trigger: Optional[str] = None


class DietaryCompliance(CamelModel):
    vegan: DietVerdict
    vegetarian: DietVerdict
    pescatarian: DietVerdict
    gluten_free: DietVerdict


class DiscrepancyRecord(CamelModel):
    ingredient: str
    present_in: List[str]
    missing_in: List[str]
    note: Optional[str] = None


class SourceReport(CamelModel):
    url: str
    ingredients: List[str]
    has_ingredients: bool


class AnalysisResult(CamelModel):
    product_name: str
    unified_ingredient_list: List[str]
    differences: List[DiscrepancyRecord]
    top9_allergens: List[str] = Field(..., alias="top9Allergens")
    dietary_compliance: DietaryCompliance
    sources: List[SourceReport]


class ProgressEvent(CamelModel):
    type: Literal["status", "error", "result"]
    message: Optional[str] = None
    data: Optional[AnalysisResult] = None

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True) + "\n"
