from typing import Optional

from pydantic import BaseModel

from clients.couchbase import CouchbaseConfig, VALID_PROTOCOLS
from utils import auth, env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class StripeConf(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

ENVIRONMENT = EnvVarSpec(id="ENVIRONMENT", default="development")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

CLIENT_URL = EnvVarSpec(id="CLIENT_URL", default="http://localhost:3000")

## Auth ##

JWT_SECRET_KEY = EnvVarSpec(id="JWT_SECRET_KEY", is_secret=True)

JWT_EXPIRE_MINUTES = EnvVarSpec(
    id="JWT_EXPIRE_MINUTES",
    default=str(60 * 24 * 7),
    parse=int,
    type=(int, ...),
)

## Storage ##

STORE_BACKEND = EnvVarSpec(id="STORE_BACKEND", default="couchbase", choices=("couchbase", "memory"))

COUCHBASE_HOST = EnvVarSpec(id="COUCHBASE_HOST", default="localhost")
COUCHBASE_USERNAME = EnvVarSpec(id="COUCHBASE_USERNAME", is_optional=True)
COUCHBASE_PASSWORD = EnvVarSpec(id="COUCHBASE_PASSWORD", is_optional=True, is_secret=True)
COUCHBASE_BUCKET = EnvVarSpec(id="COUCHBASE_BUCKET", default="carbonease")
COUCHBASE_SCOPE = EnvVarSpec(id="COUCHBASE_SCOPE", default="_default")
COUCHBASE_PROTOCOL = EnvVarSpec(id="COUCHBASE_PROTOCOL", default="couchbase", choices=VALID_PROTOCOLS)

## Stripe ##

STRIPE_SECRET_KEY = EnvVarSpec(id="STRIPE_SECRET_KEY", is_optional=True, is_secret=True)
STRIPE_WEBHOOK_SECRET = EnvVarSpec(id="STRIPE_WEBHOOK_SECRET", is_optional=True, is_secret=True)

#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    JWT_SECRET_KEY,
    JWT_EXPIRE_MINUTES,
    STORE_BACKEND,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
]

COUCHBASE_ENV_VARS = [
    COUCHBASE_HOST,
    COUCHBASE_USERNAME,
    COUCHBASE_PASSWORD,
    COUCHBASE_BUCKET,
    COUCHBASE_SCOPE,
    COUCHBASE_PROTOCOL,
]

def validate() -> bool:
    ok = env.validate(VALIDATED_ENV_VARS)
    if env.parse(STORE_BACKEND) == "couchbase":
        ok = env.validate(COUCHBASE_ENV_VARS) and ok
        problems = get_couchbase_config().errors()
        for problem in problems:
            logger.error(f"Couchbase configuration: {problem}")
        ok = ok and not problems
    if not env.parse(STRIPE_SECRET_KEY):
        logger.warning("STRIPE_SECRET_KEY not set: checkout and refunds will be unavailable")
    if not env.parse(STRIPE_WEBHOOK_SECRET):
        logger.warning("STRIPE_WEBHOOK_SECRET not set: all webhook deliveries will be rejected")
    return ok

#### Getters ####

def get_auth_config() -> auth.AuthClientConfig:
    return auth.AuthClientConfig(
        secret_key=env.parse(JWT_SECRET_KEY),
        expire_minutes=env.parse(JWT_EXPIRE_MINUTES),
    )

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_environment() -> str:
    return env.parse(ENVIRONMENT)

def get_client_url() -> str:
    return env.parse(CLIENT_URL).rstrip("/")

def get_store_backend() -> str:
    return env.parse(STORE_BACKEND)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_couchbase_config() -> CouchbaseConfig:
    return CouchbaseConfig(
        username=env.parse(COUCHBASE_USERNAME) or "",
        password=env.parse(COUCHBASE_PASSWORD) or "",
        host=env.parse(COUCHBASE_HOST),
        bucket=env.parse(COUCHBASE_BUCKET),
        protocol=env.parse(COUCHBASE_PROTOCOL),
        scope=env.parse(COUCHBASE_SCOPE),
    )

def get_stripe_conf() -> StripeConf:
    return StripeConf(
        secret_key=env.parse(STRIPE_SECRET_KEY),
        webhook_secret=env.parse(STRIPE_WEBHOOK_SECRET),
    )
