from pydantic import BaseModel, ConfigDict


class ResponseModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class PaginationMeta(ResponseModel):
    page: int
    page_size: int
    total: int


class ErrorDetail(BaseModel):
    code: str
    message: str
