import enum
from dataclasses import dataclass
from typing import Optional

from guiavision.session.media import AudioChunk


class SessionEvents(enum.Enum):
    AUDIO_OUTPUT = enum.auto()
    INTERRUPTED = enum.auto()
    TRANSCRIPTION = enum.auto()
    ERROR = enum.auto()
    CLOSE = enum.auto()


@dataclass(frozen=True)
class SessionEvent:
    """Inbound event produced by the transport for the orchestrator."""

    kind: SessionEvents
    chunk: Optional[AudioChunk] = None
    text: str = ""
    is_user: bool = False
    error: Optional[BaseException] = None


class Notice(enum.Enum):
    """User-facing announcements; the client is expected to speak the text."""

    STARTING = "Iniciando GuiaVision. Por favor, aguarde."
    ACTIVE = "Assistente ativo. Estou observando o caminho para você."
    CONNECTION_ERROR = "Ocorreu um erro na conexão."
    DEVICE_ERROR = "Não consegui acessar a câmera ou o microfone."
    STOPPED = "Assistente desligado."
    HELP = (
        "GuiaVision está ativo e utiliza inteligência artificial para descrever obstáculos, "
        "ler textos e estimar distâncias para ajudar na sua locomoção."
    )

    def to_message(self) -> dict:
        return {"type": "notice", "code": self.name, "message": self.value}
