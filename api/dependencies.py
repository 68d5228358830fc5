"""
API依赖项 - 调用方身份与服务注入
"""
from fastapi import Request

from application.services.payment_service import PaymentService
from core.config import settings
from core.exceptions import UnauthorizedException


async def get_owner_id(request: Request) -> int:
    """
    从身份头解析调用方用户ID

    认证由上游网关完成，这里只要求一个正整数用户ID。
    """
    raw = request.headers.get(settings.OWNER_HEADER)
    if not raw:
        raise UnauthorizedException(f"Missing {settings.OWNER_HEADER} header")
    try:
        owner_id = int(raw)
    except ValueError:
        raise UnauthorizedException(f"Invalid {settings.OWNER_HEADER} header")
    if owner_id <= 0:
        raise UnauthorizedException(f"Invalid {settings.OWNER_HEADER} header")
    return owner_id


async def get_payment_service(request: Request) -> PaymentService:
    """应用生命周期内构建的门面服务（见 main.lifespan）"""
    return request.app.state.payment_service
