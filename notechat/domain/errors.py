from typing import Optional


class NotechatError(Exception):
    """Base class for all errors raised by the conversation core"""


class ValidationError(NotechatError):
    """Malformed input to a repository or tool operation"""


class NotFoundError(NotechatError):
    """Missing message id, prompt title or tool name"""


class VerificationError(NotechatError):
    """A write-then-verify round trip did not match the written content"""


class RateLimitError(NotechatError):
    """External provider throttling"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ToolExecutionError(NotechatError):
    """Raised inside a tool handler; converted into a failed ToolResult"""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class TemplatingError(NotechatError):
    """Template substitution failed for one prompt layer"""


class FileStoreError(NotechatError):
    """The backing file store is unavailable or rejected an operation"""
