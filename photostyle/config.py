import os
from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

class Settings(BaseModel):
    DATA_DIR: str = os.getenv("DATA_DIR", "./data")
    # old project location; migrated once into DATA_DIR/projects
    LEGACY_DATA_DIR: str = os.getenv("LEGACY_DATA_DIR", "")

    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8080")
    # the deployed backend serves /v1/images/process rather than /process-image
    PROCESS_IMAGE_PATH: str = os.getenv("PROCESS_IMAGE_PATH", "/v1/images/process")

    # request phase is short, the whole resource may take minutes of generation
    REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60"))
    RESOURCE_TIMEOUT_SECONDS: float = float(os.getenv("RESOURCE_TIMEOUT_SECONDS", "300"))
    MAX_CONNECTIONS_PER_HOST: int = int(os.getenv("MAX_CONNECTIONS_PER_HOST", "1"))

    UPLOAD_MAX_DIMENSION: int = int(os.getenv("UPLOAD_MAX_DIMENSION", "1920"))
    UPLOAD_JPEG_QUALITY: int = int(os.getenv("UPLOAD_JPEG_QUALITY", "70"))
    ORIGINAL_JPEG_QUALITY: int = int(os.getenv("ORIGINAL_JPEG_QUALITY", "80"))
    RESULT_JPEG_QUALITY: int = int(os.getenv("RESULT_JPEG_QUALITY", "90"))

    DEBOUNCE_SECONDS: float = float(os.getenv("DEBOUNCE_SECONDS", "5"))
    COMMITTED_JOBS_MAX: int = int(os.getenv("COMMITTED_JOBS_MAX", "1000"))
    COMMITTED_JOBS_KEEP: int = int(os.getenv("COMMITTED_JOBS_KEEP", "500"))

    CREDITS_PER_JOB: int = int(os.getenv("CREDITS_PER_JOB", "1"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_RESPONSE_PREVIEW_CHARS: int = int(os.getenv("LOG_RESPONSE_PREVIEW_CHARS", "1000"))

    @property
    def process_image_url(self) -> str:
        return self.API_BASE_URL.rstrip("/") + "/" + self.PROCESS_IMAGE_PATH.lstrip("/")

settings = Settings()
