from pydantic import BaseModel, ConfigDict, Field


class NotesUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    personal_notes: str | None = Field(default=None, alias="personalNotes", max_length=20_000)


class SuccessResponse(BaseModel):
    success: bool = True
