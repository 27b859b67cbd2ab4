"""
Request schemas

Pydantic models checked before anything reaches the database.
Types are strict: a boolean is not a number and "12" is not a price.
"""

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ProductCreate(BaseModel):
    """
    Product creation payload
    Stored in the "products" collection together with the image and isDeleted.
    """

    model_config = ConfigDict(strict=True, extra="ignore")

    title: str = Field(..., min_length=3, description="Product title")
    desc: str = Field(..., description="Product description")
    category: str = Field(..., min_length=3, description="Product category")
    price: float = Field(..., ge=0, description="Unit price")
    rating: float = Field(..., ge=0, description="Average rating")
    isTrending: bool = Field(..., description="Shown in the trending section")
    isFlashSale: bool = Field(..., description="Part of the running flash sale")


def format_validation_errors(exc: ValidationError) -> List[Dict[str, str]]:
    errors: List[Dict[str, str]] = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error.get("loc", ())) or "body"
        errors.append({"path": path, "message": f"{path}: {error.get('msg', 'Invalid value')}"})
    return errors
