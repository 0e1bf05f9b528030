from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True
    BASE_URL: str = "https://letusconnect.app"

    # Stockage : "mongo" en production, "memory" pour les tests / dev local
    STORE_BACKEND: str = "mongo"
    STORE_TIMEOUT_SECONDS: float = 10.0

    # MongoDB (replica set requis pour les transactions)
    MONGO_URL: str = "mongodb://localhost:27017/?replicaSet=rs0"
    DB_NAME: str = "letusconnect"

    # JWT (émis par le fournisseur d'identité, vérifié ici)
    JWT_SECRET: str = "changeme_minimum_32_chars_here_please"

    # Jeton partagé des services internes (messagerie, inscription, projets) pour POST /api/events ;
    # non défini = publication désactivée
    SERVICE_API_TOKEN: Optional[str] = None

    # Twilio (SMS)
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_SMS_NUMBER: Optional[str] = None

    # SMTP (email)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SENDER_NAME: str = "LetUsConnect"

    # Firebase Cloud Messaging (push)
    FIREBASE_CREDENTIALS_PATH: str = "firebase-service-account.json"

    # Scheduler de notifications
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: float = 60.0
    SCHEDULER_BATCH_SIZE: int = 200
    SCHEDULER_MAX_ATTEMPTS: int = 3
    SCHEDULER_LEASE_SECONDS: float = 60.0
    DISPATCH_TIMEOUT_SECONDS: float = 30.0
    PUSH_BATCH_SIZE: int = 100             # destinataires push par fenêtre de DISPATCH_TIMEOUT_SECONDS

    # Graphe de connexions
    CONNECTION_TX_MAX_ATTEMPTS: int = 3
    CONNECTION_TX_BACKOFF_SECONDS: float = 0.1
    CONNECTION_REREQUEST_COOLDOWN_HOURS: int = 0   # 0 = renvoi autorisé après refus
    NOTIFY_ON_REJECT: bool = False

    # Lecture des notifications
    NOTIFICATIONS_PAGE_SIZE: int = 20
    NOTIFICATIONS_PAGE_MAX: int = 100

    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"],  # cherche dans backend/ puis dans la racine
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
