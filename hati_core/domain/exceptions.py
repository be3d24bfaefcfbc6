"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
API 层通过一个异常处理器把它们统一映射为 HTTP 响应；
流式响应开始之后的错误则由 relay 转成 ErrorEvent。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时使用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    default_status = 400

    def __init__(self, code: str, message: str, http_status: int | None = None, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status or self.default_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """请求字段缺失或非法，不产生任何持久化副作用。"""


class AuthError(BusinessError):
    """登录口令错误或会话令牌无效/过期。"""

    default_status = 401


class NotFoundError(BusinessError):
    """会话、项目或歌曲不存在。"""

    default_status = 404


class ConflictError(BusinessError):
    """同一会话已有进行中的流式回答。"""

    default_status = 409


class StoreError(BusinessError):
    """持久化失败，对当前调用是致命错误。"""

    default_status = 500


class UpstreamError(BusinessError):
    """上游模型服务调用失败。"""

    default_status = 502


class NetworkError(UpstreamError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(UpstreamError):
    """上游 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(UpstreamError):
    """上游限流错误，由调用方决定是否重新发送。"""

    default_status = 429
