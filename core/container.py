from dishka import make_async_container
from dishka.integrations.fastapi import FastapiProvider

from core.environment.providers import EnvironmentProvider
from indexer.providers import IndexerProvider
from core.redis.providers import RedisProvider, CacheProvider
from core.logging.providers import LoggerProvider

container = make_async_container(
    FastapiProvider(),
    EnvironmentProvider(),
    LoggerProvider(),
    IndexerProvider(),
    RedisProvider(),
    CacheProvider()
)
