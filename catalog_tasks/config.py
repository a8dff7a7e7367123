from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv
load_dotenv()


class Settings(BaseSettings):
	# App
	APP_NAME: str = "Catalog Task Pipeline"
	APP_VERSION: str = "1.0.0"
	API_V1_PREFIX: str = "/api/v1"
	DEBUG: bool = False
	ENVIRONMENT: str = "development" # development, staging, production
	LOG_LEVEL: str = "INFO"

	# Server
	PORT: int = 8000

	# Task record store
	TASKS_FILE: str = "data/tasks.json"
	TASK_RETENTION_LIMIT: int = 1000

	# Push channel
	WS_HEARTBEAT_SECONDS: float = 30.0  # 0 disables server health-checks

	# CORS
	CORS_ORIGINS: List[str] = ["http://localhost:3000"]

	# Monitoring
	EXPOSE_METRICS: bool = True

	# Client
	API_BASE_URL: str = "http://localhost:8000/api/v1"
	WS_URL: str = "ws://localhost:8000/api/v1/ws"
	HTTP_TIMEOUT_SECONDS: float = 30.0
	CLIENT_STATE_FILE: str = ".local/task-store.json"
	CLIENT_STATE_VERSION: int = 1
	PUSH_CONFIRM_TIMEOUT_SECONDS: Optional[float] = 300.0
	RECONNECT_INITIAL_DELAY_SECONDS: float = 1.0
	RECONNECT_MAX_DELAY_SECONDS: float = 30.0
	WS_KEEPALIVE_SECONDS: Optional[float] = 25.0

	model_config = SettingsConfigDict(
		env_file=".env",
		env_file_encoding="utf-8",
		case_sensitive=True,
		extra="ignore",
	)


@lru_cache()
def get_settings() -> Settings:
	return Settings()


settings = get_settings()
