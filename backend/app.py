import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import FastAPI, Depends, Request, UploadFile, File
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

import auth
import config
import file_processor
import gemini
import keepalive
import qkoins
import storage
from database import get_db, init_db
from exceptions import (
    AdminRequiredError,
    FileNotFoundInUploadsError,
    GeminiError,
    InvalidInputError,
    LoginRequiredError,
    QisaError,
    UnsupportedFileError,
    UserBannedError,
    UserNotFoundError,
)
from models import Message, SystemLog, SystemSetting, User

logger = logging.getLogger(__name__)

START_TIME = time.time()

# DB setup
init_db()


@asynccontextmanager
async def lifespan(app: FastAPI):
    tasks = keepalive.build_tasks()
    for task in tasks:
        task.start()
    app.state.background_tasks = tasks
    logger.info("Qisa API started")
    yield
    for task in tasks:
        await task.stop()
    logger.info("Qisa API shutting down")


# FastAPI setup
app = FastAPI(title="Qisa API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SessionMiddleware, secret_key=config.SECRET_KEY, session_cookie="qisa_session")


# Error handling
@app.exception_handler(QisaError)
async def qisa_error_handler(request: Request, exc: QisaError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info("Invalid request to %s: %s", request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": "Dados inválidos"})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Erro interno do servidor"})


# Schemas
class RegisterPayload(BaseModel):
    username: str
    email: EmailStr
    password: str
    displayName: Optional[str] = None

class LoginPayload(BaseModel):
    username: str
    password: str

class AttachmentPayload(BaseModel):
    filename: str
    originalName: Optional[str] = None
    mimeType: Optional[str] = None
    type: Optional[str] = None
    extractedText: Optional[str] = None

class SendMessagePayload(BaseModel):
    sessionId: str
    content: str = ""
    isImageRequest: bool = False
    attachments: List[AttachmentPayload] = Field(default_factory=list)

class ContextMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str

class SimpleSendPayload(BaseModel):
    content: str
    isImageRequest: bool = False
    context: List[ContextMessage] = Field(default_factory=list)

class SessionPayload(BaseModel):
    title: Optional[str] = None

class RenamePayload(BaseModel):
    title: str

class BanPayload(BaseModel):
    banned: bool

class SystemTogglePayload(BaseModel):
    online: bool
    message: Optional[str] = None


# Identity
def get_optional_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    user_id = request.session.get("user_id")
    if not user_id:
        return None
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        request.session.clear()
        return None
    if user.banned:
        request.session.clear()
        raise UserBannedError()
    return user

def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
    if user is None:
        raise LoginRequiredError()
    return user

def get_identity(request: Request, user: Optional[User] = Depends(get_optional_user)) -> User:
    """The logged-in user, or a throwaway identity from ``x-user-session``."""
    if user is not None:
        return user
    return auth.anonymous_user(request.headers.get("x-user-session"))

def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.username != config.ADMIN_USERNAME:
        raise AdminRequiredError()
    return user


# System settings and audit log
MAINTENANCE_DEFAULT_MESSAGE = "O sistema está em manutenção. Voltamos em breve!"

def get_setting(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    return row.value if row else default

def set_setting(db: Session, key: str, value: str):
    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if row:
        row.value = value
    else:
        db.add(SystemSetting(key=key, value=value))

def add_system_log(db: Session, message: str, details: Optional[str] = None, level: str = "info"):
    db.add(SystemLog(level=level, message=message, details=details))
    db.commit()

def maintenance_status(db: Session) -> dict:
    return {
        "maintenanceMode": get_setting(db, "maintenance_mode", "false") == "true",
        "maintenanceMessage": get_setting(db, "maintenance_message", MAINTENANCE_DEFAULT_MESSAGE),
    }

def check_maintenance(db: Session, user: User) -> Optional[JSONResponse]:
    status = maintenance_status(db)
    if status["maintenanceMode"] and user.username != config.ADMIN_USERNAME:
        return JSONResponse(status_code=503, content={"error": status["maintenanceMessage"], "maintenance": True})
    return None


# Chat helpers
EDIT_KEYWORDS = ('editar', 'trocar', 'modificar', 'alterar', 'mudar', 'pinte', 'mude', 'troque')
ANALYZE_KEYWORDS = ('analisar', 'analise', 'descreva', 'descrever', 'o que', 'que tem', 'vejo', 'mostrar')

INSUFFICIENT_QKOINS_EDIT = "❌ QKoins insuficientes! Você precisa de 1 QKoin para editar uma imagem. Colete sua recompensa diária ou aguarde até amanhã."
INSUFFICIENT_QKOINS_GENERATE = "❌ QKoins insuficientes! Você precisa de 1 QKoin para gerar uma imagem. Colete sua recompensa diária ou aguarde até amanhã."
LOGIN_FOR_IMAGES = "❌ Para gerar imagens, você precisa fazer login e ter QKoins. Faça login e colete sua recompensa diária!"
TEXT_APOLOGY = "Desculpe, não consegui gerar uma resposta agora. Tente novamente em instantes."
ANALYZE_APOLOGY = "Desculpe, não consegui analisar a imagem. Tente novamente."


def choose_mode(content: str, attachments: List[dict], is_image_request: bool, authenticated: bool) -> str:
    text = content.lower()
    has_image = any(a["type"] == "image" and (a.get("mimeType") or "").startswith("image/") for a in attachments)
    wants_edit = any(k in text for k in EDIT_KEYWORDS)
    wants_analysis = any(k in text for k in ANALYZE_KEYWORDS)

    if has_image and wants_edit and authenticated:
        return "edit"
    if has_image and (wants_analysis or not is_image_request):
        return "analyze"
    if is_image_request:
        return "generate"
    return "text"


def resolve_attachments(items: List[AttachmentPayload]) -> List[dict]:
    resolved = []
    for item in items:
        record = item.model_dump()
        record["type"] = record.get("type") or file_processor.file_type(record.get("mimeType") or "")
        record["path"] = str(file_processor.file_path(item.filename)) if file_processor.file_exists(item.filename) else None
        resolved.append(record)
    return resolved


def paid_image(db: Session, user: User, description: str, producer, success_text: str,
               failure_text: str, insufficient_text: str, refund_reason: str):
    """Spend one QKoin, run ``producer`` and refund the coin if it fails."""
    if not qkoins.spend(db, user, config.IMAGE_COST, description):
        return insufficient_text, None
    try:
        image_url = producer()
    except GeminiError as e:
        logger.warning("[Gemini] Image request failed for user %s: %s", user.id, e)
        qkoins.earn(db, user, config.IMAGE_COST, f"Reembolso: {refund_reason}")
        return failure_text, None
    return success_text, image_url


def answer(db: Session, user: User, content: str, context: List[dict], attachments: List[dict],
           is_image_request: bool):
    authenticated = not user.is_anonymous
    mode = choose_mode(content, attachments, is_image_request, authenticated)
    username = user.username if authenticated else None
    logger.info("[Chat] Mode %s for %s (%s attachments)", mode, user.username, len(attachments))

    if mode == "edit":
        image = next(a for a in attachments if a["type"] == "image")
        if not image.get("path"):
            return "❌ Arquivo de imagem não encontrado no servidor.", None
        return paid_image(
            db, user,
            description=f"Edição de imagem: {content[:50]}...",
            producer=lambda: gemini.edit_image(image["path"], content),
            success_text="Aqui está sua imagem editada:",
            failure_text="Desculpe, não consegui editar a imagem. Tente novamente com uma descrição diferente. Seu QKoin foi reembolsado.",
            insufficient_text=INSUFFICIENT_QKOINS_EDIT,
            refund_reason="falha na edição de imagem",
        )

    if mode == "generate":
        if not authenticated:
            return LOGIN_FOR_IMAGES, None
        return paid_image(
            db, user,
            description=f"Geração de imagem: {content[:50]}...",
            producer=lambda: gemini.generate_image(content),
            success_text="Aqui está a imagem que você solicitou:",
            failure_text="Desculpe, não consegui gerar a imagem. Tente novamente com uma descrição diferente. Seu QKoin foi reembolsado.",
            insufficient_text=INSUFFICIENT_QKOINS_GENERATE,
            refund_reason="falha na geração de imagem",
        )

    try:
        return gemini.generate_response(content, context, username, attachments), None
    except GeminiError as e:
        logger.error("[Gemini] Text request failed for %s: %s", user.username, e)
        return (ANALYZE_APOLOGY if mode == "analyze" else TEXT_APOLOGY), None


# Routes: auth
@app.post("/api/auth/register")
def register(payload: RegisterPayload, request: Request, db: Session = Depends(get_db)):
    user = auth.register(db, payload.username, payload.email, payload.password, payload.displayName)
    request.session["user_id"] = user.id
    return {"success": True, "user": user.to_dict()}

@app.post("/api/auth/login")
def login(payload: LoginPayload, request: Request, db: Session = Depends(get_db)):
    user = auth.login(db, payload.username, payload.password)
    request.session["user_id"] = user.id
    return {"success": True, "user": user.to_dict()}

@app.post("/api/auth/logout")
def logout(request: Request):
    request.session.clear()
    return {"success": True}

@app.get("/api/auth/me")
def me(user: User = Depends(get_current_user)):
    return {"user": user.to_dict()}


# Routes: chat
@app.get("/api/chat/current-session")
def current_session(user: User = Depends(get_identity), db: Session = Depends(get_db)):
    return storage.get_current_session(db, user).to_dict()

@app.get("/api/chat/messages/{session_id}")
def get_messages(session_id: str, user: User = Depends(get_identity), db: Session = Depends(get_db)):
    return [m.to_dict() for m in storage.list_messages(db, user, session_id)]

@app.delete("/api/chat/messages/{session_id}")
def clear_messages(session_id: str, user: User = Depends(get_identity), db: Session = Depends(get_db)):
    if user.is_anonymous:
        return {"success": True, "message": "Não há histórico para limpar"}
    storage.clear_messages(db, user, session_id)
    return {"success": True}

@app.post("/api/chat/send")
def send_message(payload: SendMessagePayload, user: User = Depends(get_identity), db: Session = Depends(get_db)):
    blocked = check_maintenance(db, user)
    if blocked:
        return blocked

    content = payload.content.strip()
    attachments = resolve_attachments(payload.attachments)
    if not content and not attachments:
        raise InvalidInputError("A mensagem não pode ser vazia")

    saved = not user.is_anonymous
    context = []
    if saved:
        public_attachments = [
            {k: a.get(k) for k in ("filename", "originalName", "mimeType", "type")} for a in attachments
        ]
        storage.append_message(
            db, user, payload.sessionId, "user", content,
            metadata={"attachments": public_attachments} if attachments else None,
        )
        history = storage.list_messages(db, user, payload.sessionId)
        context = [{"role": m.role, "content": m.content} for m in history[:-1]]

    response, image_url = answer(db, user, content, context, attachments, payload.isImageRequest)

    if saved:
        storage.append_message(db, user, payload.sessionId, "assistant", response, image_url=image_url)

    return {"response": response, "imageUrl": image_url, "saved": saved}

@app.post("/api/chat/simple-send")
def simple_send(payload: SimpleSendPayload, user: User = Depends(get_identity), db: Session = Depends(get_db)):
    blocked = check_maintenance(db, user)
    if blocked:
        return blocked

    content = payload.content.strip()
    if not content:
        raise InvalidInputError("A mensagem não pode ser vazia")
    context = [m.model_dump() for m in payload.context]
    response, image_url = answer(db, user, content, context, [], payload.isImageRequest)
    return {"response": response, "imageUrl": image_url}

@app.get("/api/chat/search")
def search_messages(query: str = "", user: User = Depends(get_identity), db: Session = Depends(get_db)):
    return storage.search_messages(db, user, query)

@app.get("/api/chat/sessions")
def list_sessions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return [s.to_dict() for s in storage.list_sessions(db, user)]

@app.post("/api/chat/sessions")
def create_session(payload: Optional[SessionPayload] = None, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    title = payload.title if payload else None
    return storage.create_session(db, user, title).to_dict()

@app.patch("/api/chat/sessions/{session_id}")
def rename_session(session_id: str, payload: RenamePayload, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return storage.rename_session(db, user, session_id, payload.title).to_dict()

@app.post("/api/chat/sessions/{session_id}/activate")
def activate_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage.activate_session(db, user, session_id)
    return {"success": True}

@app.delete("/api/chat/sessions/{session_id}")
def delete_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage.delete_session(db, user, session_id)
    return {"success": True, "sessionId": session_id, "message": "Sessão excluída com sucesso"}


# Routes: QKoins
@app.get("/api/qkoins/balance")
def qkoin_balance(user: Optional[User] = Depends(get_optional_user)):
    if user is None:
        return {"qkoins": 0, "message": "Login necessário para usar QKoins"}
    return {
        "qkoins": qkoins.get_balance(user),
        "canClaimDaily": qkoins.can_claim_daily(user),
        "canClaimBonus": qkoins.can_claim_bonus(user),
        "userId": user.id,
    }

@app.post("/api/qkoins/daily-reward")
def claim_daily_reward(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not qkoins.claim_daily(db, user):
        raise InvalidInputError("Recompensa diária já foi coletada hoje")
    return {
        "success": True,
        "message": f"Recompensa diária coletada! +{config.DAILY_REWARD_AMOUNT} QKoins",
        "qkoins": qkoins.get_balance(user),
    }

@app.post("/api/qkoins/claim-bonus")
def claim_bonus(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not qkoins.claim_bonus(db, user):
        minutes = qkoins.minutes_until_bonus(user)
        raise InvalidInputError(f"Aguarde {minutes} minutos para resgatar outro bônus")
    return {
        "success": True,
        "message": f"Bônus resgatado! +{config.BONUS_AMOUNT} QKoins",
        "qkoins": qkoins.get_balance(user),
    }

@app.get("/api/qkoins/transactions")
def qkoin_transactions(user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)):
    if user is None:
        return []
    return [t.to_dict() for t in qkoins.list_transactions(db, user)]


# Routes: files
@app.post("/api/files/upload")
async def upload_files(files: List[UploadFile] = File(...), user: User = Depends(get_current_user)):
    if not files:
        raise InvalidInputError("Nenhum arquivo enviado")
    if len(files) > config.MAX_UPLOAD_FILES:
        raise InvalidInputError(f"Envie no máximo {config.MAX_UPLOAD_FILES} arquivos por vez")

    received = []
    for upload in files:
        if not file_processor.is_allowed(upload.content_type):
            logger.info("[Upload] Rejected %s (%s)", upload.filename, upload.content_type)
            raise UnsupportedFileError()
        await upload.seek(0)
        received.append((upload.filename, upload.content_type, await upload.read()))

    processed = [file_processor.process_file(data, name, mime) for name, mime, data in received]
    logger.info("[Upload] User %s uploaded %s file(s)", user.id, len(processed))
    return {
        "success": True,
        "files": processed,
        "message": f"{len(processed)} arquivo(s) processado(s) com sucesso",
    }

@app.get("/uploads/{filename}")
def serve_upload(filename: str):
    if not file_processor.file_exists(filename):
        raise FileNotFoundInUploadsError()
    return FileResponse(file_processor.file_path(filename))

@app.delete("/api/files/{filename}")
def delete_upload(filename: str, user: User = Depends(get_current_user)):
    if not file_processor.delete_file(filename):
        raise FileNotFoundInUploadsError()
    return {"success": True, "message": "Arquivo excluído com sucesso"}


# Routes: admin
def _get_user_or_404(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise UserNotFoundError()
    return user

@app.get("/api/admin/system/config")
def system_config(db: Session = Depends(get_db)):
    return maintenance_status(db)

@app.get("/api/admin/users")
def admin_users(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    users = db.query(User).order_by(User.created_at.asc()).all()
    return [{
        "id": u.id,
        "username": u.username,
        "email": u.email,
        "qkoins": u.qkoins,
        "messageCount": storage.count_user_messages(db, u.id),
        "lastLogin": u.last_login.isoformat() if u.last_login else None,
        "banned": bool(u.banned),
    } for u in users]

@app.get("/api/admin/status")
def admin_status(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    status = maintenance_status(db)
    return {
        "online": not status["maintenanceMode"],
        "uptime": f"{int(time.time() - START_TIME)} seconds",
        "totalUsers": db.query(User).count(),
        "activeUsers": db.query(User).filter(User.banned.is_(False)).count(),
        "totalMessages": db.query(Message).count(),
    }

@app.get("/api/admin/logs")
def admin_logs(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    logs = db.query(SystemLog).order_by(SystemLog.created_at.desc(), SystemLog.id.desc()).limit(200).all()
    return [log.to_dict() for log in logs]

@app.delete("/api/admin/logs")
def admin_clear_logs(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    db.query(SystemLog).delete()
    db.commit()
    add_system_log(db, "All system logs cleared", f"Action by {admin.username}")
    return {"success": True, "message": "Logs limpos com sucesso"}

@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    if user_id == admin.id:
        raise InvalidInputError("Você não pode excluir sua própria conta")
    user = _get_user_or_404(db, user_id)
    db.delete(user)
    db.commit()
    add_system_log(db, f"Admin deleted user {user_id}", f"Deleted by {admin.username}")
    return {"success": True, "message": "Usuário excluído com sucesso"}

@app.patch("/api/admin/users/{user_id}/ban")
def admin_ban_user(user_id: int, payload: BanPayload, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    if user_id == admin.id:
        raise InvalidInputError("Você não pode banir sua própria conta")
    user = _get_user_or_404(db, user_id)
    user.banned = payload.banned
    db.commit()
    action = "banned" if payload.banned else "unbanned"
    add_system_log(db, f"Admin {action} user {user_id}", f"Action by {admin.username}")
    return {"success": True, "message": "Usuário banido" if payload.banned else "Usuário desbanido"}

@app.delete("/api/admin/users/{user_id}/history")
def admin_clear_history(user_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    _get_user_or_404(db, user_id)
    deleted = storage.clear_user_history(db, user_id)
    add_system_log(db, f"Admin cleared chat history for user {user_id}", f"{deleted} messages, action by {admin.username}")
    return {"success": True, "message": "Histórico do usuário limpo"}

@app.patch("/api/admin/system/toggle")
def admin_toggle_system(payload: SystemTogglePayload, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    set_setting(db, "maintenance_mode", "false" if payload.online else "true")
    if payload.message:
        set_setting(db, "maintenance_message", payload.message.strip())
    db.commit()
    add_system_log(db, f"System {'enabled' if payload.online else 'disabled'}", f"Action by {admin.username}")
    return {"success": True, "message": "Sistema ativado" if payload.online else "Sistema desativado"}

@app.post("/api/admin/clean-sessions")
def admin_clean_sessions(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    result = storage.prune_sessions(db, admin, keep=3)
    add_system_log(db, f"Admin cleaned {result['deleted']} old sessions", f"Action by {admin.username}")
    return {
        "success": True,
        "message": f"Limpeza concluída. {result['deleted']} sessões removidas.",
        **result,
    }


# Routes: health
@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "uptime": time.time() - START_TIME,
    }

@app.get("/api/ping")
def ping():
    return {"pong": True, "timestamp": datetime.utcnow().isoformat()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=5000, reload=config.APP_ENV != "production")
