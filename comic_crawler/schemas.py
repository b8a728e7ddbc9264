"""Response schemas for the source comic API."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ItemValidationError
from .models import CatalogItemRef


class GenreRef(BaseModel):
    """Genre reference embedded in stories and the genre list."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default="", alias="_id")
    name: str = ""
    slug: str = ""


class ListingItem(BaseModel):
    """One entry of a listing page."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="_id", min_length=1)
    name: str = ""
    slug: str = Field(min_length=1)
    thumb_url: str = ""
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    def to_ref(self) -> CatalogItemRef:
        return CatalogItemRef(id=self.id, slug=self.slug, last_known_update_time=self.updated_at)


class ListingData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: List[Dict[str, Any]] = []


class ListingResponse(BaseModel):
    """Envelope of a listing page: {status, data: {items: [...]}}."""
    model_config = ConfigDict(extra="ignore")

    status: str = ""
    msg: str = ""
    data: Optional[ListingData] = None

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @property
    def raw_items(self) -> List[Dict[str, Any]]:
        return self.data.items if self.data else []


class ChapterEntry(BaseModel):
    """One chapter as listed inside a server group."""
    model_config = ConfigDict(extra="ignore")

    filename: str = ""
    chapter_name: str = ""
    chapter_title: str = ""
    chapter_api_data: Optional[str] = None

    @field_validator("chapter_name", "chapter_title", "filename", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        return "" if value is None else str(value)


class ChapterServer(BaseModel):
    """A per-source group of chapters."""
    model_config = ConfigDict(extra="ignore")

    server_name: str = "Server #1"
    server_data: List[ChapterEntry] = []


class StoryDetail(BaseModel):
    """Full detail of one story."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default="", alias="_id")
    name: str = Field(min_length=1)
    slug: str = Field(min_length=1)
    origin_name: List[str] = []
    content: str = ""
    status: str = ""
    thumb_url: str = ""
    author: List[str] = []
    category: List[GenreRef] = []
    chapters: List[ChapterServer] = []
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    @field_validator("origin_name", "author", mode="before")
    @classmethod
    def _coerce_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(v) for v in value if v]

    @field_validator("content", "status", "thumb_url", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        return "" if value is None else value


class StoryDetailData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item: StoryDetail


class StoryDetailResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str
    data: StoryDetailData


class ChapterImage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image_page: int = 0
    image_file: str


class ChapterContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    chapter_path: str = ""
    chapter_image: List[ChapterImage] = []


class ChapterContentData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    domain_cdn: str = ""
    item: ChapterContent


class ChapterContentResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str
    data: ChapterContentData

    def image_urls(self) -> List[str]:
        """Absolute image URLs in page order."""
        base = self.data.domain_cdn.rstrip("/")
        path = self.data.item.chapter_path.strip("/")
        pages = sorted(self.data.item.chapter_image, key=lambda img: img.image_page)
        return [f"{base}/{path}/{img.image_file}" for img in pages]


class GenreListData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: List[Dict[str, Any]] = []


class GenreListResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str = ""
    data: Optional[GenreListData] = None


def parse_model(model, payload: Any, what: str):
    """
    Validate a payload against a schema at the API boundary.

    Args:
        model: Pydantic model class
        payload: Decoded JSON body
        what: Short description used in the error message

    Returns:
        Validated model instance

    Raises:
        ItemValidationError: If the payload does not match the schema
    """
    if not isinstance(payload, dict):
        raise ItemValidationError(f"{what}: expected JSON object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ItemValidationError(f"{what}: {loc or 'payload'} {first.get('msg', 'invalid')}") from e
