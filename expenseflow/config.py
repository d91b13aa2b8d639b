import os


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///expenseflow.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = _env_flag("WTF_CSRF_ENABLED", "true")
    AUTO_CREATE_TABLES = _env_flag("AUTO_CREATE_TABLES", "true")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")
    CURRENCY_LOOKUP_ENABLED = _env_flag("CURRENCY_LOOKUP_ENABLED", "true")
    EXCHANGE_API_URL = os.environ.get(
        "EXCHANGE_API_URL", "https://api.exchangerate-api.com/v4/latest/{base}"
    )
    REST_COUNTRIES_URL = os.environ.get(
        "REST_COUNTRIES_URL", "https://restcountries.com/v3.1/all?fields=name,currencies"
    )
    EXCHANGE_API_TIMEOUT = float(os.environ.get("EXCHANGE_API_TIMEOUT", 10))

    UPLOAD_FOLDER = os.environ.get("UPLOAD_FOLDER", "uploads")
    OCR_ENABLED = _env_flag("OCR_ENABLED", "true")
    EXPENSES_PER_PAGE = int(os.environ.get("EXPENSES_PER_PAGE", 10))


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    AUTO_CREATE_TABLES = False
    CURRENCY_LOOKUP_ENABLED = False
    OCR_ENABLED = False
    LOG_LEVEL = "WARNING"


class ProductionConfig(Config):
    AUTO_CREATE_TABLES = _env_flag("AUTO_CREATE_TABLES", "false")


config_by_name = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
