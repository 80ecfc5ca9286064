"""统一 API 响应模型"""

from typing import Any, List, Optional
from pydantic import BaseModel, Field


class ApiResponse(BaseModel):
    """标准 API 响应封装，warnings 承载持久化缓存写入告警"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def ok(
        cls,
        data: Any = None,
        message: str = "success",
        warnings: Optional[List[str]] = None,
    ) -> "ApiResponse":
        return cls(success=True, data=data, message=message, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)
