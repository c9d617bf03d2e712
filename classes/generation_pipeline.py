# classes/generation_pipeline.py
"""
One generation request, end to end:

    start operation -> tag & filter inputs by domain -> (call service -> recover
    JSON -> validate) under retry -> scan output for leakage -> complete/fail

Route handlers only build prompts and map errors to HTTP outcomes.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from classes import settings
from classes.data_source_validator import DataSourceValidator, ProvenanceContext, SourceType
from classes.errors import ContaminationWarning, RecoveryError, ValidationError
from classes.operation_state_manager import OperationStateManager
from classes.response_cache import ResponseCache
from classes.response_validation import SchemaLike, parse_and_validate, validate_ai_text
from classes.retry_utils import retry_with_backoff

logger = logging.getLogger("draftguard_backend")

_NO_FALLBACK = object()

PromptBuilder = Callable[[ProvenanceContext, ProvenanceContext], str]


class TextGenerator(Protocol):
    async def generate(self, prompt: str, *, system: Optional[str] = None) -> str: ...


@dataclass
class GenerationResult:
    data: Any
    operation_id: str
    contamination: Optional[ContaminationWarning] = None
    report: Dict[str, Any] = field(default_factory=dict)
    used_fallback: bool = False
    cached: bool = False

    def metadata(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "contamination": self.contamination.to_dict() if self.contamination else None,
            "data_sources": self.report,
            "used_fallback": self.used_fallback,
            "cached": self.cached,
        }

    def summary(self) -> Dict[str, Any]:
        """What the operation record keeps; the generated payload stays with the caller."""
        return {
            "used_fallback": self.used_fallback,
            "cached": self.cached,
            "contaminated": self.contamination is not None,
        }


def _as_jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


class GenerationPipeline:
    def __init__(
        self,
        llm: TextGenerator,
        operations: OperationStateManager,
        validator: DataSourceValidator,
        *,
        cache: Optional[ResponseCache] = None,
        max_retries: int = settings.RETRY_MAX_RETRIES,
        base_delay: float = settings.RETRY_BASE_DELAY,
    ):
        self.llm = llm
        self.operations = operations
        self.validator = validator
        self.cache = cache
        self.max_retries = max_retries
        self.base_delay = base_delay

    def _contexts(
        self,
        user_id: Any,
        owner_records: Mapping[str, str],
        interview_records: Optional[Mapping[str, str]],
    ):
        owner_points = self.validator.tag_source(owner_records, SourceType.OWNER_BUSINESS, user_id, source="owner_form")
        interview_points = self.validator.tag_source(
            interview_records or {}, SourceType.THIRD_PARTY_INTERVIEW, user_id, source="interview"
        )
        owner_ctx = self.validator.build_context(owner_points, SourceType.OWNER_BUSINESS)
        interview_ctx = self.validator.build_context(interview_points, SourceType.THIRD_PARTY_INTERVIEW)
        report = self.validator.contamination_report({
            **{f"owner:{k}": p for k, p in owner_points.items()},
            **{f"interview:{k}": p for k, p in interview_points.items()},
        })
        return owner_ctx, interview_ctx, report

    def _scan(
        self,
        text: str,
        target: SourceType,
        owner_ctx: ProvenanceContext,
        interview_ctx: ProvenanceContext,
    ) -> Optional[ContaminationWarning]:
        if target is SourceType.OWNER_BUSINESS:
            scan = self.validator.scan_output(text, owner_ctx, interview_ctx)
        else:
            scan = self.validator.scan_output(text, interview_ctx, owner_ctx)
        return scan.as_warning()

    async def _run(
        self,
        *,
        user_id: Any,
        operation_type: str,
        prompt_builder: PromptBuilder,
        owner_records: Mapping[str, str],
        interview_records: Optional[Mapping[str, str]],
        target: SourceType,
        parse: Callable[[str], Any],
        fallback: Any,
        system: Optional[str],
        cache_section: Optional[str],
    ) -> GenerationResult:
        target = SourceType(target)

        async def work(operation_id: str) -> GenerationResult:
            owner_ctx, interview_ctx, report = self._contexts(user_id, owner_records, interview_records)
            prompt = prompt_builder(owner_ctx, interview_ctx)

            async def attempt():
                raw = await self.llm.generate(prompt, system=system)
                return parse(raw)

            used_fallback = False
            cached = False
            key = None
            data = None
            if self.cache is not None and cache_section:
                key = ResponseCache.make_key(cache_section, prompt, system)
                data = self.cache.get(key)
                cached = data is not None
                if cached:
                    logger.info(f"[PIPELINE] {operation_type} for user {user_id} served from cache")

            if not cached:
                try:
                    data = await retry_with_backoff(
                        attempt,
                        max_retries=self.max_retries,
                        base_delay=self.base_delay,
                        context=operation_type,
                    )
                except (ValidationError, RecoveryError) as e:
                    if fallback is _NO_FALLBACK:
                        raise
                    logger.warning(f"[PIPELINE] {operation_type} for user {user_id} degraded to fallback: {e}")
                    data = fallback
                    used_fallback = True
                else:
                    if key is not None:
                        self.cache.set(key, data)

            jsonable = _as_jsonable(data)
            text = jsonable if isinstance(jsonable, str) else json.dumps(jsonable, ensure_ascii=False)
            contamination = self._scan(text, target, owner_ctx, interview_ctx)

            return GenerationResult(
                data=data,
                operation_id=operation_id,
                contamination=contamination,
                report=report,
                used_fallback=used_fallback,
                cached=cached,
            )

        return await self.operations.run_tracked(
            user_id,
            operation_type,
            work,
            metadata={"target": target.value},
            summarize=GenerationResult.summary,
        )

    async def generate_json(
        self,
        *,
        user_id: Any,
        operation_type: str,
        prompt_builder: PromptBuilder,
        schema: SchemaLike,
        owner_records: Mapping[str, str],
        interview_records: Optional[Mapping[str, str]] = None,
        fallback: Any = _NO_FALLBACK,
        target: SourceType = SourceType.OWNER_BUSINESS,
        system: Optional[str] = None,
        cache_section: Optional[str] = None,
    ) -> GenerationResult:
        """
        Structured generation. Content-shape failures re-sample the service under
        retry; once retries are exhausted, Validation/Recovery errors degrade to
        `fallback` when one is given and propagate otherwise.
        """
        def parse(raw: str) -> Any:
            return parse_and_validate(raw, schema, context=operation_type)

        return await self._run(
            user_id=user_id,
            operation_type=operation_type,
            prompt_builder=prompt_builder,
            owner_records=owner_records,
            interview_records=interview_records,
            target=target,
            parse=parse,
            fallback=fallback,
            system=system,
            cache_section=cache_section,
        )

    async def generate_text(
        self,
        *,
        user_id: Any,
        operation_type: str,
        prompt_builder: PromptBuilder,
        owner_records: Mapping[str, str],
        interview_records: Optional[Mapping[str, str]] = None,
        fallback: Any = _NO_FALLBACK,
        target: SourceType = SourceType.OWNER_BUSINESS,
        system: Optional[str] = None,
        min_length: int = 0,
        cache_section: Optional[str] = None,
    ) -> GenerationResult:
        def parse(raw: str) -> str:
            return validate_ai_text(raw, context=operation_type, min_length=min_length)

        return await self._run(
            user_id=user_id,
            operation_type=operation_type,
            prompt_builder=prompt_builder,
            owner_records=owner_records,
            interview_records=interview_records,
            target=target,
            parse=parse,
            fallback=fallback,
            system=system,
            cache_section=cache_section,
        )
