from pydantic import BaseModel, Field

from deobf_service.storage import MAX_GRANT


class TransformResponse(BaseModel):
    request_id: str
    user_id: str
    source_filename: str
    output_filename: str
    output_b64: str
    original_size: int
    output_size: int
    links: list[str] = []
    diagnostic_output: str = ""
    elapsed_sec: float
    charged: bool
    remaining_balance: int


class CreditBalanceResponse(BaseModel):
    user_id: str
    balance: int


class DailyClaimResponse(BaseModel):
    user_id: str
    claimed: bool
    balance: int


class AdminGrantRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0, le=MAX_GRANT)
    note: str = "manual grant"
