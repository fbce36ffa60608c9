from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PhotoStyle(str, Enum):
    RUSTIC = "RUSTIC"
    BRIGHT = "BRIGHT"
    SOCIAL = "SOCIAL"


class GenerationState(str, Enum):
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class GenerationEvent(str, Enum):
    VISIBLE = "visible"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRY = "retry"


# -----------------------------------------------------------------------------
# Menu analysis wire format
# -----------------------------------------------------------------------------
class RawDishRecord(_CamelModel):
    original_name: str = Field(alias="originalName")
    english_translation: str = Field(alias="englishTranslation")
    ingredients_or_description: str = Field(alias="ingredientsOrDescription")
    price: Optional[str] = None
    category: Optional[str] = None

    @field_validator("english_translation", "ingredients_or_description")
    @classmethod
    def _required_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v.strip()

    @field_validator("original_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        return v.strip()

    @field_validator("price", "category")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        # The model is told to "leave empty" a missing price.
        if v is None:
            return None
        v = v.strip()
        return v or None


class MenuAnalysisResponse(_CamelModel):
    dishes: List[RawDishRecord]


# -----------------------------------------------------------------------------
# Dish (one card, with its generation lifecycle)
# -----------------------------------------------------------------------------
class Dish(_CamelModel):
    id: str
    original_name: str = Field(alias="originalName")
    english_translation: str = Field(alias="englishTranslation")
    description: str
    price: Optional[str] = None
    category: Optional[str] = None
    image_ref: Optional[str] = Field(default=None, alias="imageRef")
    generation_state: GenerationState = Field(default=GenerationState.NOT_REQUESTED, alias="generationState")

    @classmethod
    def from_record(cls, dish_id: str, record: RawDishRecord) -> Dish:
        return cls(
            id=dish_id,
            original_name=record.original_name,
            english_translation=record.english_translation,
            description=record.ingredients_or_description,
            price=record.price,
            category=record.category,
        )


# -----------------------------------------------------------------------------
# Proxy endpoints
# -----------------------------------------------------------------------------
class ParseMenuRequest(_CamelModel):
    base64_image: Optional[str] = Field(default=None, alias="base64Image")


class GenerateImageRequest(_CamelModel):
    dish_name: Optional[str] = Field(default=None, alias="dishName")
    description: Optional[str] = None
    style: PhotoStyle = PhotoStyle.BRIGHT


class GenerateImageResponse(_CamelModel):
    image_url: str = Field(alias="imageUrl")


# -----------------------------------------------------------------------------
# Session API
# -----------------------------------------------------------------------------
ActiveTab = Literal["photos", "menu"]


class AppStateView(BaseModel):
    is_analyzing: bool
    active_tab: ActiveTab
    is_camera_open: bool
    has_menu_image: bool
    error: Optional[str] = None


class SessionView(BaseModel):
    session_id: str
    state: AppStateView
    dishes: List[Dish] = Field(default_factory=list)


class ScanRequest(BaseModel):
    image_base64: str


class UiStateUpdate(BaseModel):
    active_tab: Optional[ActiveTab] = None
    is_camera_open: Optional[bool] = None


class RectModel(BaseModel):
    # Vertical-only reports share a unit-wide column.
    x: float = 0.0
    y: float
    width: float = 1.0
    height: float


class ViewportReport(BaseModel):
    viewport: RectModel
    cards: Dict[str, RectModel]


class ViewportResult(BaseModel):
    fired: List[str]
