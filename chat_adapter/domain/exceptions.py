"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在工具层做统一捕获与用户提示。对外暴露的每个操作要么返回
完整结果，要么只抛出下面定义的某一种异常。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、provider 等）。
    """

    default_code = "BUSINESS_ERROR"
    default_status = 400

    def __init__(self, message: str, code: str | None = None, http_status: int | None = None, **extra):
        self.code = code or self.default_code
        self.message = message
        self.http_status = http_status or self.default_status
        self.extra = extra
        super().__init__(message)


class NotFoundError(BusinessError):
    """会话在缓存和磁盘中都不存在（或磁盘文件已损坏）。"""

    default_code = "CONVERSATION_NOT_FOUND"
    default_status = 404

    def __init__(self, conversation_id: str, **extra):
        super().__init__(f"Conversation not found: {conversation_id}", conversation_id=conversation_id, **extra)
        self.conversation_id = conversation_id


class StorageError(BusinessError):
    """文件系统读写失败，原始 I/O 错误信息保存在 message 中。"""

    default_code = "STORE_ERROR"
    default_status = 500


class CreateError(BusinessError):
    """会话创建失败（ID 分配或首次写盘失败）。"""

    default_code = "CONVERSATION_CREATE_ERROR"
    default_status = 500


class ValidationError(BusinessError):
    """参数或配置校验失败，发生在任何持久化或远端调用之前。"""

    default_code = "VALIDATION_ERROR"


class ChatTimeoutError(BusinessError):
    """远端调用超时。与其他失败区分开，方便调用方判断“慢”还是“坏”。"""

    default_code = "CHAT_TIMEOUT"
    default_status = 504

    def __init__(self, message: str = "Chat completion request timed out", **kwargs):
        super().__init__(message, **kwargs)


class ChatCancelledError(ChatTimeoutError):
    """本轮对话被主动取消，归入超时类错误。"""

    default_code = "CHAT_CANCELLED"

    def __init__(self, message: str = "Chat completion request was cancelled", **kwargs):
        super().__init__(message, **kwargs)


class CompletionError(BusinessError):
    """远端补全接口调用失败的基类。"""

    default_code = "COMPLETION_ERROR"
    default_status = 502


class NetworkError(CompletionError):
    """网络层错误，例如连接失败、连接中断等。"""

    default_code = "NETWORK_ERROR"


class ApiError(CompletionError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""

    default_code = "API_ERROR"


class RateLimitError(CompletionError):
    """Provider 限流错误（重试次数耗尽后才会抛到上层）。"""

    default_code = "RATE_LIMIT"
    default_status = 429
