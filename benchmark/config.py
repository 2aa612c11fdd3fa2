import os


class Config:
    """Configuration for the Flask app and database.

    - ``SQLALCHEMY_DATABASE_URI``: defaults to a local SQLite file but can be
      overridden via the ``DATABASE_URL`` environment variable.  Heroku/Render
      style ``postgres://`` URLs are normalised for SQLAlchemy.
    - ``SQLALCHEMY_TRACK_MODIFICATIONS``: disables the event system which
      otherwise adds overhead.
    - ``SECRET_KEY``: used by Flask for session signing.  In production you
      should set this to a strong random value via the environment.
    - ``JSON_SORT_KEYS``: prevents Flask from alphabetically sorting keys in
      JSON responses, preserving insertion order instead.

    Workflow knobs:

    - ``DEFAULT_WIP_CAP``: WIP cap given to projects created without one.
    - ``DEFAULT_SLA_MINUTES``: maximum queue wait for a stage when the
      project's ``sla_config`` does not name it.
    - ``MAX_CLAIM_ROUNDS``: how many times ``start-next`` re-reads the queue
      after losing every claim in a round.
    - ``REJECTION_REASON_MIN_LENGTH``: minimum length of a rejection reason.
    """

    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL", "sqlite:///benchmark.db"
    ).replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
    JSON_SORT_KEYS = False
    DEBUG = False
    TESTING = False

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    DEFAULT_WIP_CAP = int(os.getenv("DEFAULT_WIP_CAP", "1"))
    DEFAULT_SLA_MINUTES = int(os.getenv("DEFAULT_SLA_MINUTES", "240"))
    MAX_CLAIM_ROUNDS = int(os.getenv("MAX_CLAIM_ROUNDS", "3"))
    REJECTION_REASON_MIN_LENGTH = 10
    ORDERS_PER_PAGE = 20
    ORDERS_MAX_PER_PAGE = 200


class DevelopmentConfig(Config):
    DEBUG = True


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}


class ProductionConfig(Config):
    pass


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
