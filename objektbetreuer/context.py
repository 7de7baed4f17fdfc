import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .auth import LocalAuthService
from .config import Settings
from .database import init_db, make_engine
from .identity import IdentityResolver, ProfileCache
from .live import LiveQueryHub
from .mailer import Mailer
from .models import utcnow


@dataclass
class AppContext:
    """Everything a request handler needs, built once at process start."""
    settings: Settings
    engine: Any
    clock: Callable[[], datetime]
    mailer: Any
    auth: LocalAuthService
    identity: IdentityResolver
    live: LiveQueryHub
    token_rng: Any

    def close(self):
        self.live.close()
        self.engine.dispose()


def build_context(
    settings: Optional[Settings] = None,
    clock: Optional[Callable[[], datetime]] = None,
    mailer=None,
    token_rng=None,
) -> AppContext:
    settings = settings or Settings.from_env()
    clock = clock or utcnow
    engine = make_engine(settings.database_url)
    init_db(engine)
    mailer = mailer or Mailer(settings)
    auth = LocalAuthService(engine, settings, clock, mailer)
    identity = IdentityResolver(engine, clock, ProfileCache(settings.profile_cache_path))
    auth.on_principal_changed(identity.on_principal_changed)
    return AppContext(
        settings=settings,
        engine=engine,
        clock=clock,
        mailer=mailer,
        auth=auth,
        identity=identity,
        live=LiveQueryHub(),
        # invitation tokens come from a plain PRNG; swap in random.SystemRandom() if they must be unguessable
        token_rng=token_rng or random.Random(),
    )
