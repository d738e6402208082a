"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

调用层错误（TransportError 及其子类）会终止当前会话且不再自动继续；
解码层错误（MalformedChunkError）只在本地记录并降级处理。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "API_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 session_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """底层调用失败或被 Provider 拒绝。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(TransportError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(TransportError):
    """Provider 限流错误，由上层负责重试/退避策略。"""


class CancellationError(BusinessError):
    """调用方主动中止了进行中的请求，不视为失败。"""


class MalformedChunkError(BusinessError):
    """流式增量无法解析。"""


class AttemptLimitExceeded(BusinessError):
    """继续次数已达上限后仍尝试记录新的继续。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ConfigurationError(ValidationError):
    """调用选项无效，在发起任何请求之前同步抛出。"""
