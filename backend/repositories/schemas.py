"""Validated write payloads.

Clients send camelCase keys (``goutAttack``, ``purinPer100g``); repositories work
in the snake_case column names. Both spellings are accepted on input.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from db.dialect import to_bool
from db.errors import RecordValidationError
from utils.datetime_utils import to_iso, parse_timestamp


def _coerce_bool(value: Any) -> bool:
    return to_bool(value)


def _coerce_timestamp(value: Any) -> Any:
    if value is None or value == "":
        return None
    if parse_timestamp(value) is None:
        raise ValueError(f"not a valid timestamp: {value!r}")
    return to_iso(value)


def _coerce_whole_number(value: Any) -> Any:
    if value is None or value == "":
        return 0
    if isinstance(value, float):
        return int(round(value))
    if isinstance(value, str):
        try:
            return int(round(float(value)))
        except ValueError:
            return value
    return value


def _coerce_amount(value: Any) -> Any:
    if value is None or value == "":
        return 0.0
    return value


Flag = Annotated[bool, BeforeValidator(_coerce_bool)]
Timestamp = Annotated[str, BeforeValidator(_coerce_timestamp)]
OptionalTimestamp = Annotated[str | None, BeforeValidator(_coerce_timestamp)]
WholeNumber = Annotated[int, BeforeValidator(_coerce_whole_number), Field(ge=0)]
Amount = Annotated[float, BeforeValidator(_coerce_amount), Field(ge=0)]

MealType = Literal["BREAKFAST", "LUNCH", "DINNER", "SNACK"]
Gender = Literal["MALE", "FEMALE", "DIVERSE"]


class Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


class ReadingIn(Payload):
    id: str | None = None
    user_id: str
    timestamp: Timestamp
    value: float = Field(ge=0, le=20)
    normal: Flag = False
    much_meat: Flag = False
    much_sport: Flag = False
    much_sugar: Flag = False
    much_alcohol: Flag = False
    fasten: Flag = False
    gout_attack: Flag = False
    notes: str | None = None
    updated_at: OptionalTimestamp = None


class MealComponentIn(Payload):
    id: str | None = None
    food_item_name: str = Field(min_length=1)
    estimated_weight: WholeNumber = 0
    purin: WholeNumber = 0
    uric_acid: WholeNumber = 0
    calories: WholeNumber = 0
    protein: Amount = 0.0


class MealIn(Payload):
    id: str | None = None
    user_id: str
    timestamp: Timestamp
    meal_type: MealType
    name: str | None = None
    total_purin: WholeNumber = 0
    total_uric_acid: WholeNumber = 0
    total_calories: WholeNumber = 0
    total_protein: Amount = 0.0
    thumbnail_path: str | None = None
    components: list[MealComponentIn] = Field(default_factory=list)
    updated_at: OptionalTimestamp = None


class FoodItemIn(Payload):
    id: str | None = None
    user_id: str
    name: str = Field(min_length=1)
    # to_camel would render these as "...Per100G"
    purin_per_100g: WholeNumber = Field(default=0, alias="purinPer100g")
    uric_acid_per_100g: WholeNumber = Field(default=0, alias="uricAcidPer100g")
    calories_per_100g: WholeNumber = Field(default=0, alias="caloriesPer100g")
    protein_percentage: Amount = 0.0
    category: str = Field(min_length=1)
    image_path: str | None = None
    thumbnail_path: str | None = None
    updated_at: OptionalTimestamp = None


class UserIn(Payload):
    id: str | None = None
    guid: str | None = None
    gender: Gender | None = None
    birth_year: int | None = Field(default=None, ge=1900, le=2100)
    last_backup_timestamp: OptionalTimestamp = None
    email: str | None = None
    google_id: str | None = None
    username: str | None = None
    password_hash: str | None = None
    is_admin: bool | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password_hash)


class ApiKeyIn(Payload):
    name: str = Field(min_length=1)
    description: str | None = None
    can_read_own_uric_acid: Flag = False
    can_write_own_uric_acid: Flag = False
    can_read_own_meals: Flag = False
    can_write_own_meals: Flag = False
    can_read_all_uric_acid: Flag = False
    can_read_all_meals: Flag = False
    created_by: str | None = None


class AnalysisResultIn(Payload):
    id: str | None = None
    user_id: str
    analysis_date: OptionalTimestamp = None
    data_period_start: Timestamp
    data_period_end: Timestamp
    insights: Any
    recommendations: Any
    confidence_score: float | None = Field(default=None, ge=0, le=1)


def field_names(model: type[Payload], data: dict[str, Any]) -> dict[str, Any]:
    """Rename camelCase keys in ``data`` to the model's field names; unknown keys are dropped."""
    renamed: dict[str, Any] = {}
    for name, info in model.model_fields.items():
        if name in data:
            renamed[name] = data[name]
        elif info.alias and info.alias in data:
            renamed[name] = data[info.alias]
    return renamed


def validate_payload(model: type[Payload], data: Any) -> Payload:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or None
        raise RecordValidationError(
            f"Invalid {model.__name__.removesuffix('In').lower()}: {location}: {first.get('msg')}",
            field=location,
        ) from exc
