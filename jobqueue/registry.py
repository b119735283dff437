import importlib
import inspect
import logging
import pkgutil
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from .backoff import BackoffPolicy
from .errors import DuplicateJobType, UnknownJobType, ValidationError

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class JobType(BaseModel):
    """
    Registry entry for one job type. Not persisted.

    Unset defaults (None) fall back to the queue's Settings at enqueue time.
    ``params_model`` is a pydantic model used as the schema for the job's
    parameters; payloads that do not validate are rejected at enqueue.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(min_length=1)
    handler: Handler
    priority: Optional[int] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    backoff: Optional[BackoffPolicy] = None
    params_model: Optional[Type[BaseModel]] = None
    retryable: bool = True
    retry_if: Optional[Callable[[BaseException], bool]] = None
    # off by default; a str or a callable(job) -> str
    dedupe_key: Union[str, Callable[[Any], Optional[str]], None] = None
    description: str = ""

    def validate_parameters(self, parameters: Mapping[str, Any]) -> None:
        if self.params_model is None:
            return
        try:
            self.params_model.model_validate(dict(parameters))
        except PydanticValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors())
            raise ValidationError(f"Invalid parameters for {self.name}: {fields}") from e

    def dedupe_key_for(self, job: Any) -> Optional[str]:
        """
        Key shared by jobs that must not be in flight twice. While a PENDING or
        RUNNING job holds a key, enqueueing another job with it returns the
        existing one.
        """
        if self.dedupe_key is None:
            return None
        if not callable(self.dedupe_key):
            return self.dedupe_key or None
        try:
            key = self.dedupe_key(job)
        except Exception as e:
            raise ValidationError(f"dedupe_key for {self.name} failed: {type(e).__name__}: {e}") from e
        return str(key) if key else None

    def should_retry(self, error: BaseException) -> bool:
        if not self.retryable:
            return False
        if self.retry_if is not None:
            return bool(self.retry_if(error))
        return True


class JobRegistry:
    """Type name -> JobType. Register everything before the queue starts."""

    def __init__(self):
        self._types: Dict[str, JobType] = {}
        self._lock = threading.Lock()

    def register(self, descriptor: JobType) -> JobType:
        with self._lock:
            if descriptor.name in self._types:
                raise DuplicateJobType(f"Job type already registered: {descriptor.name}")
            self._types[descriptor.name] = descriptor
        logger.info("Registered job type %s", descriptor.name)
        return descriptor

    def job(self, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        """
        Decorator form of register():

            @registry.job("EmailNotificationHandler", max_retries=5)
            def send_email(job, ctx): ...
        """
        def decorator(fn: Handler) -> Handler:
            self.register(JobType(name=name or fn.__name__, handler=fn, **options))
            return fn
        return decorator

    def get(self, name: str) -> JobType:
        descriptor = self._types.get(name)
        if descriptor is None:
            raise UnknownJobType(f"No handler registered for job type: {name}")
        return descriptor

    def names(self) -> List[str]:
        return list(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __len__(self) -> int:
        return len(self._types)


def discover_handlers(package: str, registry: JobRegistry) -> List[str]:
    """
    Scans ``package`` for modules defining:
      JOB_TYPE = "..."
      def perform(job, ctx) -> result
      OPTIONS = {...}            # optional JobType fields

    Registers each one and returns the registered names. Modules that break
    the contract are logged and skipped.
    """
    pkg = importlib.import_module(package)
    found: List[str] = []

    for module_info in pkgutil.iter_modules(getattr(pkg, "__path__", [])):
        module_name = f"{package}.{module_info.name}"
        try:
            module = importlib.import_module(module_name)
        except Exception as e:
            logger.error("Failed to import job handler module %s: %s", module_name, e)
            continue

        if not hasattr(module, "JOB_TYPE"):
            continue
        job_type = getattr(module, "JOB_TYPE")

        perform = getattr(module, "perform", None)
        if perform is None or not callable(perform):
            logger.warning("Module %s has JOB_TYPE but no perform() function. Skipping.", module_name)
            continue

        try:
            inspect.signature(perform).bind(None, None)
        except TypeError:
            logger.error("Handler %s violates contract: perform(job, ctx) expected. Skipping.", module_name)
            continue

        try:
            registry.register(JobType(name=job_type, handler=perform, **getattr(module, "OPTIONS", {})))
        except (DuplicateJobType, PydanticValidationError) as e:
            logger.error("Could not register %s from %s: %s", job_type, module_name, e)
            continue
        found.append(job_type)

    return found
