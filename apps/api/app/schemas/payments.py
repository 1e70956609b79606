from pydantic import BaseModel


class CallbackAck(BaseModel):
    """Daraja only checks ResultCode; anything else is informational."""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"
