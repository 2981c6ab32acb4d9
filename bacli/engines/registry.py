from ..config import EngineInstanceConfig
from ..errors import ConfigError
from .base import DatabaseEngine
from .mongodb import MongoDB
from .postgres import Postgres

ENGINES = {
    Postgres.engine: Postgres,
    MongoDB.engine: MongoDB,
}


def build_engine(settings: EngineInstanceConfig, engines=None, **kwargs) -> DatabaseEngine:
    """
    Get the adapter for an instance's engine.

    Raises:
        ConfigError: If the engine is not supported
    """
    engine_class = (engines or ENGINES).get(settings.engine)
    if engine_class is None:
        raise ConfigError(f"Unsupported database engine: {settings.engine}")
    return engine_class(settings, **kwargs)
