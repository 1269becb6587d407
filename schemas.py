# schemas.py
"""
Request bodies. Numbers are kept loosely typed here so the lottery rules in
draws.validate_numbers produce the error message.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class NewBet(BaseModel):
    numbers: list = Field(..., description="NUMBERS_COUNT distinct integers in [NUMBERS_MIN, NUMBERS_MAX]")
    nickname: Optional[str] = Field(None, max_length=50)
    transactionId: Optional[str] = Field(None, description="Payment signature, if already sent")


class BetNumbers(BaseModel):
    numbers: list


class MultipleBets(BaseModel):
    bets: List[BetNumbers] = Field(..., description="Up to MAX_BETS_PER_REQUEST entries")
    nickname: Optional[str] = Field(None, max_length=50)


class InitSession(BaseModel):
    numbers: list
    nickname: Optional[str] = Field(None, max_length=50)


class CompleteSession(BaseModel):
    sessionId: str
    transactionId: Optional[str] = None


class ManualResult(BaseModel):
    drawDate: str = Field(..., description="ISO date or datetime; a bare date means end of that day")
    numbers: list
