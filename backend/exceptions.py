"""Domain errors raised by the service layer.

Each error carries the Portuguese message shown to the user and the HTTP
status the API answers with. ``app.py`` registers one handler for the whole
hierarchy.
"""


class QisaError(Exception):
    """Base exception for all Qisa errors."""
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


# Validation
class InvalidInputError(QisaError):
    def __init__(self, message: str = "Dados inválidos"):
        super().__init__(message, status_code=400)


# Authentication
class UsernameTakenError(QisaError):
    def __init__(self, message: str = "Nome de usuário já existe"):
        super().__init__(message, status_code=400)


class EmailTakenError(QisaError):
    def __init__(self, message: str = "Email já está em uso"):
        super().__init__(message, status_code=400)


class InvalidCredentialsError(QisaError):
    def __init__(self, message: str = "Usuário ou senha incorretos"):
        super().__init__(message, status_code=401)


class LoginRequiredError(QisaError):
    def __init__(self, message: str = "Login necessário"):
        super().__init__(message, status_code=401)


class UserBannedError(QisaError):
    def __init__(self, message: str = "Sua conta foi suspensa"):
        super().__init__(message, status_code=403)


class AdminRequiredError(QisaError):
    def __init__(self, message: str = "Acesso negado. Apenas administradores."):
        super().__init__(message, status_code=403)


# Sessions
class SessionNotFoundError(QisaError):
    def __init__(self, message: str = "Sessão não encontrada ou foi removida"):
        super().__init__(message, status_code=404)


class SessionAccessDeniedError(QisaError):
    def __init__(self, message: str = "Você não tem acesso a esta sessão"):
        super().__init__(message, status_code=403)


class UserNotFoundError(QisaError):
    def __init__(self, message: str = "Usuário não encontrado"):
        super().__init__(message, status_code=404)


# Files
class FileNotFoundInUploadsError(QisaError):
    def __init__(self, message: str = "Arquivo não encontrado"):
        super().__init__(message, status_code=404)


class UnsupportedFileError(QisaError):
    def __init__(self, message: str = "Apenas PDFs, imagens e arquivos de texto são permitidos"):
        super().__init__(message, status_code=400)


# External AI service
class GeminiError(Exception):
    """The generative model call failed. Never shown to users as-is."""
