"""
Settings API Endpoints

Mutating endpoints are plain ``def`` so FastAPI runs them in the threadpool:
a live listener swap waits for the event loop to bring the new server up.
Service errors are translated to HTTP responses by the handler in main.py.
"""
import base64
import binascii
from io import BytesIO
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel, to_pascal

from ..services.settings_service import SettingsService

router = APIRouter()


def get_settings_service(request: Request) -> SettingsService:
    return request.app.state.settings_service


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SettingUpdate(CamelModel):
    key: str
    value: str = ""


class PasswordUpdate(CamelModel):
    old_password: str
    new_password: str


class SSLUpdate(CamelModel):
    ssl: str
    ssl_type: str = "self"
    domain: str = ""
    cert: str = ""
    key: str = ""


class BindInfo(CamelModel):
    ipv6: str
    bind_address: str


class PortUpdate(CamelModel):
    server_port: int


class MfaRequest(CamelModel):
    title: str
    interval: int = 30


class MfaCredential(CamelModel):
    code: str
    interval: int
    secret: str


class ProxyUpdate(CamelModel):
    proxy_type: str
    proxy_url: str = ""
    proxy_port: str = ""
    proxy_user: str = ""
    proxy_passwd: str = ""  # base64
    proxy_passwd_keep: str = "disable"


class TerminalInfo(CamelModel):
    line_height: str
    letter_spacing: str
    font_size: str
    cursor_blink: str
    cursor_style: str
    scrollback: str
    scroll_sensitivity: str


OK = {"message": "Settings saved successfully"}


# =============================================
# General
# =============================================

@router.post("/search", response_model=Dict[str, str])
def get_setting_info(service: SettingsService = Depends(get_settings_service)):
    """All settings as key-value pairs, secrets masked"""
    return service.get_setting_info()


@router.get("/search/available")
async def get_system_available():
    """Settings subsystem is up"""
    return {"status": "ok"}


@router.post("/update")
def update_setting(req: SettingUpdate, service: SettingsService = Depends(get_settings_service)):
    """Update one setting; special keys are applied to the live server"""
    service.update(req.key, req.value)
    return OK


@router.post("/menu/update")
def update_menu(req: SettingUpdate, service: SettingsService = Depends(get_settings_service)):
    """Hide advanced menu entries"""
    service.update_menu(req.value)
    return OK


@router.post("/terminal/search")
def get_terminal_info(service: SettingsService = Depends(get_settings_service)):
    return service.get_terminal_info()


@router.post("/terminal/update")
def update_terminal(req: TerminalInfo, service: SettingsService = Depends(get_settings_service)):
    service.update_terminal({to_pascal(k): v for k, v in req.model_dump().items()})
    return OK


# =============================================
# Proxy
# =============================================

@router.post("/proxy/update")
def update_proxy(req: ProxyUpdate, service: SettingsService = Depends(get_settings_service)):
    passwd = ""
    if req.proxy_passwd and req.proxy_type:
        try:
            passwd = base64.b64decode(req.proxy_passwd, validate=True).decode()
        except (binascii.Error, UnicodeDecodeError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"kind": "validation", "message": "proxyPasswd must be base64 encoded"},
            )
    service.update_proxy(
        req.proxy_type, req.proxy_url, req.proxy_port,
        req.proxy_user, passwd, req.proxy_passwd_keep,
    )
    return OK


# =============================================
# Password
# =============================================

@router.post("/password/update")
def update_password(req: PasswordUpdate, service: SettingsService = Depends(get_settings_service)):
    service.update_password(req.old_password, req.new_password)
    return OK


@router.post("/expired/handle")
def handle_password_expired(req: PasswordUpdate, service: SettingsService = Depends(get_settings_service)):
    """Reset an expired password; the old password is required"""
    service.handle_password_expired(req.old_password, req.new_password)
    return OK


# =============================================
# SSL
# =============================================

@router.post("/ssl/update")
def update_ssl(req: SSLUpdate, service: SettingsService = Depends(get_settings_service)):
    info = service.update_ssl(req.ssl, req.ssl_type, req.cert, req.key, req.domain)
    return {**OK, "certificate": info.to_dict() if info else None}


@router.get("/ssl/info")
def load_from_cert(service: SettingsService = Depends(get_settings_service)):
    return service.load_from_cert().to_dict()


@router.post("/ssl/download")
def download_ssl(service: SettingsService = Depends(get_settings_service)):
    data = service.download_ssl()
    return StreamingResponse(
        BytesIO(data),
        media_type="application/x-x509-ca-cert",
        headers={"Content-Disposition": 'attachment; filename="server.crt"'},
    )


# =============================================
# Listener binding
# =============================================

@router.get("/interface", response_model=List[str])
def load_interface_addr(service: SettingsService = Depends(get_settings_service)):
    return service.load_interface_addr()


@router.post("/bind/update")
def update_bind_info(req: BindInfo, service: SettingsService = Depends(get_settings_service)):
    service.update_bind_info(req.ipv6, req.bind_address)
    return OK


@router.post("/port/update")
def update_port(req: PortUpdate, service: SettingsService = Depends(get_settings_service)):
    service.update_port(req.server_port)
    return OK


# =============================================
# MFA
# =============================================

@router.post("/mfa")
def load_mfa(req: MfaRequest, service: SettingsService = Depends(get_settings_service)):
    """Issue a new secret + QR code; nothing is saved until bind"""
    return service.load_mfa(req.title, req.interval).to_dict()


@router.post("/mfa/bind")
def bind_mfa(req: MfaCredential, service: SettingsService = Depends(get_settings_service)):
    service.bind_mfa(req.code, req.interval, req.secret)
    return OK


@router.post("/mfa/unbind")
def unbind_mfa(service: SettingsService = Depends(get_settings_service)):
    service.unbind_mfa()
    return OK
