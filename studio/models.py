import base64
import binascii
from enum import IntEnum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Duration(IntEnum):
    SECONDS_5 = 5
    SECONDS_8 = 8


DEFAULT_DURATION = Duration.SECONDS_5


class ReferenceImage(BaseModel):
    """Optional first frame handed to the video model."""

    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: bytes
    name: Optional[str] = None

    @classmethod
    def from_data_uri(cls, data_uri: str, name: Optional[str] = None) -> "ReferenceImage":
        header, sep, payload = data_uri.partition(",")
        if not sep or not header.startswith("data:") or not header.endswith(";base64"):
            raise ValueError("image_data must be a base64 data URI")
        mime_type = header[len("data:"):-len(";base64")] or "application/octet-stream"
        try:
            data = base64.b64decode(payload, validate=True)
        except binascii.Error as e:
            raise ValueError(f"image_data is not valid base64: {e}") from e
        return cls(mime_type=mime_type, data=data, name=name)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class FormState(BaseModel):
    prompt: str = ""
    image: Optional[ReferenceImage] = None
    duration: Duration = DEFAULT_DURATION


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    image: Optional[ReferenceImage] = None
    duration: Duration = DEFAULT_DURATION


# One variant per state; each carries only the payload that state allows.

class IdleState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["idle"] = "idle"
    error: Optional[str] = None


class GeneratingState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["generating"] = "generating"
    progress: str = ""


class SuccessState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    video_url: str = Field(..., min_length=1)


class ErrorState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["error"] = "error"
    message: str = Field(..., min_length=1)


GenerationState = Annotated[
    Union[IdleState, GeneratingState, SuccessState, ErrorState],
    Field(discriminator="status"),
]


class FormView(BaseModel):
    prompt: str
    duration: Duration
    has_image: bool
    image_name: Optional[str] = None
    is_loading: bool = False


class StateSnapshot(BaseModel):
    form: FormView
    state: GenerationState


class GenerateRequest(BaseModel):
    prompt: str = ""
    image_data: Optional[str] = None
    image_name: Optional[str] = None
    duration: Duration = DEFAULT_DURATION

    @field_validator("image_data")
    @classmethod
    def check_image_data(cls, value: Optional[str]) -> Optional[str]:
        if value:
            ReferenceImage.from_data_uri(value)
        return value or None

    def reference_image(self) -> Optional[ReferenceImage]:
        if not self.image_data:
            return None
        return ReferenceImage.from_data_uri(self.image_data, name=self.image_name)
