"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编排层（StreamOrchestrator）或宿主消息层做统一捕获与用户提示。

错误分类：
- 解析类：ResolutionError / MissingCredentialError，流尚未开始即失败。
- 能力类：CapabilityError，会话创建时允许按 RETRY_POLICY 降级重试一次。
- 活性类：StreamTimeoutError，零输出超时。
- Provider 故障：NetworkError / ApiError / RateLimitError，对本次调用是终态。
"""

from typing import Dict, Mapping, Optional, Type


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、backend_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ResolutionError(BusinessError):
    """无法为请求选出可用后端（未知 Provider、未知模型等）。"""


class MissingCredentialError(ResolutionError):
    """远程 Provider 缺少 API 密钥，请求时才会抛出。"""


class CapabilityError(BusinessError):
    """后端不支持请求的可选能力（如图片/音频输入）。"""


class BackendUnavailableError(BusinessError):
    """后端当前不可用（本地模型未就绪、下载中等）。"""


class StreamTimeoutError(BusinessError):
    """活性计时器到期且没有收到任何输出。"""


# 每类错误允许的自动重试次数；未列出的错误一律不重试。
RETRY_POLICY: Dict[Type[BusinessError], int] = {
    CapabilityError: 1,
}


def retries_for(exc: BaseException, policy: Optional[Mapping[Type[BusinessError], int]] = None) -> int:
    """查询某个异常允许的重试次数，默认按 RETRY_POLICY。"""

    for kind, count in (RETRY_POLICY if policy is None else policy).items():
        if isinstance(exc, kind):
            return count
    return 0


def error_message(exc: BaseException) -> str:
    if isinstance(exc, BusinessError):
        return exc.message
    return str(exc) or exc.__class__.__name__


def render_error_notice(exc: BaseException) -> str:
    """把异常渲染成写入对话记录的错误提示。"""

    if isinstance(exc, MissingCredentialError):
        provider = exc.extra.get("provider") or "the selected provider"
        return (
            f"❌ Error: Missing provider credentials for {provider}. "
            "Add an API key in settings and try again."
        )
    msg = error_message(exc)
    if "Requires a user gesture" in msg:
        msg += " Please click here and try again."
    return f"❌ Error: {msg}"


def render_interruption(exc: BaseException) -> str:
    """部分输出后发生故障时追加在内容末尾的注记。"""

    return f"\n\n⚠️ Stream interrupted: {error_message(exc)}"
