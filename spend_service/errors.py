"""数据集服务异常定义"""

from typing import Optional


class SpendServiceError(Exception):
    """服务内所有业务异常的基类"""


class UnknownSourceError(SpendServiceError, KeyError):
    """请求的数据来源未在注册表中登记"""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"未知数据来源: {source_id}")

    def __str__(self) -> str:
        return self.args[0]


class PayloadRejectedError(SpendServiceError, ValueError):
    """导入数据被整体拒绝，不产生任何状态变更"""


class MalformedPayloadError(PayloadRejectedError):
    """顶层数据无法解析，或不是要求的数组结构"""


class StructuralValidationError(PayloadRejectedError):
    """首个元素缺少必需字段"""

    def __init__(self, message: str, missing: Optional[list] = None):
        self.missing = list(missing or [])
        super().__init__(message)


class DurableCacheWriteError(SpendServiceError):
    """持久化缓存写入失败（容量超限或所有后端不可用）"""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"持久化缓存写入失败 {key}: {reason}")
