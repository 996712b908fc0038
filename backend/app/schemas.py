from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime


EntryStatus = Literal["pending", "completed", "error"]


class PendingAnalysisResponse(BaseModel):
    id: int
    status: Literal["pending"] = "pending"
    imageUrl: str


class ErrorResponse(BaseModel):
    error: str
    status: Literal["error"] = "error"
    code: str


class FoodEntry(BaseModel):
    id: int
    userId: str
    date: str
    imageUrl: Optional[str] = None
    status: EntryStatus
    name: str
    unit: str
    kcalories: Optional[int] = None
    protein: Optional[int] = None
    value: Optional[int] = None
    createdAt: Optional[datetime] = None


class FoodEntryListResponse(BaseModel):
    items: List[FoodEntry]


class AverageDailyCaloriesResponse(BaseModel):
    fromDate: str
    toDate: str
    averageDailyCalories: int = Field(..., ge=0)
    daysCounted: int = Field(..., ge=0)
    completedCount: int = Field(..., ge=0)
    pendingCount: int = Field(..., ge=0)
    provisional: bool


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    db: str
