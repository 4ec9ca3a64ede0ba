"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError。
错误类型在产生错误的边界（Model Gateway 适配层）就已确定，
上层（重试执行器、会话状态）只按类型判断，不解析错误文本。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 attempts、provider 等）。
    """

    default_code = "BUSINESS_ERROR"

    def __init__(
        self,
        message: str = "",
        code: Optional[str] = None,
        http_status: int = 400,
        **extra,
    ):
        self.code = code or self.default_code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    @property
    def attempts(self) -> int:
        """重试执行器写入的尝试次数，未经过重试时为 1。"""

        return int(self.extra.get("attempts", 1))

    def with_attempts(self, attempts: int) -> "BusinessError":
        self.extra["attempts"] = attempts
        if attempts > 1:
            self.message = f"{self.message} (failed after {attempts} attempts)"
            self.args = (self.message,)
        return self


class ConfigurationError(BusinessError):
    """参数或配置校验失败（模型配置非法、缺少 API Key 等）。"""

    default_code = "CONFIGURATION_ERROR"


class AbortedError(BusinessError):
    """调用方通过 CancellationToken 主动取消。永不重试。"""

    default_code = "ABORTED"


class StreamingError(BusinessError):
    """流式消息生命周期中的错误，message_id 指向出错的那条消息。"""

    default_code = "STREAMING_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None, message_id: Optional[str] = None, **extra):
        super().__init__(message, code=code, **extra)
        self.message_id = message_id


class NetworkError(BusinessError):
    """网络层错误基类。"""

    default_code = "NETWORK_ERROR"


class ConnectionFailedError(NetworkError):
    """连接失败、连接被重置等，可重试。"""

    default_code = "CONNECTION_FAILED"


class RequestTimeoutError(NetworkError):
    """请求超时，可重试。"""

    default_code = "TIMEOUT"


class ServerUnavailableError(NetworkError):
    """服务端 5xx，可重试。"""

    default_code = "SERVER_ERROR"


class RateLimitedError(NetworkError):
    """Provider 限流（429），不自动重试，由调用方决定何时再发。"""

    default_code = "RATE_LIMITED"


class AuthError(NetworkError):
    """认证失败（401/403），不重试。"""

    default_code = "UNAUTHORIZED"


class ApiError(NetworkError):
    """其余 4xx 响应，不重试。"""

    default_code = "API_ERROR"
