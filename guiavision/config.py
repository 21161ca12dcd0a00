"""Configuration settings for the GuiaVision live assistant."""

from typing import Optional

from pydantic_settings import BaseSettings

DEFAULT_SYSTEM_INSTRUCTION = """
Você é um assistente de locomoção para crianças e adolescentes com deficiência visual chamado GuiaVision.
Seu objetivo é descrever o ambiente de forma clara, amigável e concisa.
1. Identifique obstáculos, pessoas e objetos à frente.
2. Estime a distância em metros (ex: "Obstáculo a 2 metros").
3. Diga se algo está "muito próximo" (menos de 1 metro) ou "seguro".
4. Reconheça e leia em voz alta qualquer texto, placa, símbolo ou número que aparecer.
5. Seja proativo: se vir um perigo iminente, use um tom de alerta.
6. Mantenha as descrições curtas para não sobrecarregar o usuário.
7. Use linguagem simples e adequada para o público jovem.
"""


class Settings(BaseSettings):
    """Application settings."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080
    https: bool = False
    ssl_cert: str = ""
    ssl_key: str = ""

    # Live session settings
    api_key: Optional[str] = None
    model_name: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    voice_name: str = "Kore"
    connect_timeout: float = 15.0

    # Audio settings
    output_sample_rate: int = 24000
    input_sample_rate: int = 16000
    input_block_size: int = 4096  # samples per uplink PCM frame

    # Video settings
    frame_rate: float = 1.0  # frames per second sent to the model
    jpeg_quality: float = 0.6
    frame_max_width: int = 640

    # Capture devices (aiortc MediaPlayer / ffmpeg device names)
    video_device: str = "/dev/video0"
    video_format: Optional[str] = "v4l2"
    video_size: str = "640x480"
    audio_input_device: Optional[str] = "default"
    audio_input_format: Optional[str] = "pulse"

    # Playback device (aiortc MediaRecorder); empty keeps the reply clock without playing audio
    audio_output_device: Optional[str] = "default"
    audio_output_format: Optional[str] = "pulse"

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None


# Global settings instance
settings = Settings()
