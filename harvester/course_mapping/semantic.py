"""
Semantic Matcher - AI-assisted mapping for records the rules couldn't place.

Unresolved records are sent in batches. Each batch:
1. reserves one quota unit on the best available credential
2. sends a bounded-context prompt to the inference service
3. parses one tagged outcome per record
4. validates suggestions against the catalog

Every call attempt, successful or not, writes one usage log entry.
A failure only affects the records in the batch that was being sent.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Iterator, Optional

from .config import Config
from .errors import (
    HallucinatedSuggestion,
    NoCredentialAvailable,
    ProviderError,
    ProviderMalformed,
    ProviderNotSent,
    ProviderRateLimited,
    ProviderRequestError,
    TemporarilyExhausted,
)
from .index import CatalogIndex
from .inference import GeminiClient, InferenceReply
from .models import MappingResult, NormalizedRecord, RecordStatus, UsageLogEntry
from .prompts import build_request, render_prompt
from .quota import QuotaAllocator, Reservation, utcnow
from .responses import (
    SuggestionOk,
    SuggestionOutcome,
    SuggestionParseError,
    SuggestionProviderError,
    parse_response,
    provider_error_outcomes,
)
from .validator import detect_confidence_anomalies, validate_suggestion

logger = logging.getLogger(__name__)


def chunked(records: list[NormalizedRecord], size: int) -> Iterator[list[NormalizedRecord]]:
    size = max(1, size)
    for start in range(0, len(records), size):
        yield records[start:start + size]


class SemanticMatcher:
    """Runs unresolved records through the inference service under quota control."""

    def __init__(
        self,
        allocator: QuotaAllocator,
        client: GeminiClient,
        config: Optional[Config] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.allocator = allocator
        self.client = client
        self.config = config or Config()
        self._sleep = sleep
        self._clock = clock

    def match(
        self,
        records: list[NormalizedRecord],
        index: CatalogIndex,
        batch_id: str,
    ) -> list[MappingResult]:
        """
        Produce a MappingResult for every record.

        Raises:
            NoCredentialAvailable: quota ran out before all records were
                sent. The exception's report is None here; results for the
                records already processed are on exc.partial_results.
        """
        results: list[MappingResult] = []
        chunks = list(chunked(records, self.config.semantic.batch_size))

        for position, chunk in enumerate(chunks):
            try:
                outcomes, model_id = self._run_chunk(chunk, index, batch_id)
            except NoCredentialAvailable as e:
                remaining = [r for c in chunks[position:] for r in c]
                logger.error(
                    f"Semantic stage aborted for batch {batch_id}: {e} "
                    f"({len(remaining)} record(s) skipped)"
                )
                results.extend(
                    MappingResult(
                        record_id=r.record_id,
                        status=RecordStatus.SEMANTIC_SKIPPED,
                        detail=str(e),
                    )
                    for r in remaining
                )
                e.partial_results = results
                raise
            results.extend(self._results_for(chunk, outcomes, index, model_id))

        accepted = [r.secondary_mapping for r in results if r.secondary_mapping]
        for warning in detect_confidence_anomalies(accepted)["warnings"]:
            logger.warning(f"Batch {batch_id}: {warning}")

        return results

    def _run_chunk(
        self,
        chunk: list[NormalizedRecord],
        index: CatalogIndex,
        batch_id: str,
    ) -> tuple[dict[str, SuggestionOutcome], str]:
        """Send one batch, retrying per the retry policy. Returns (outcomes, model_id)."""
        retry = self.config.retry
        request = build_request(chunk, index, self.config.semantic.candidate_limit)
        prompt = render_prompt(request)
        refs = [r.ref for r in chunk]

        rate_limited: set[str] = set()
        last_error: Optional[ProviderError] = None

        # Credential swaps after a rate limit don't count as attempts
        attempt = 1
        while True:
            try:
                with self.allocator.reservation(exclude=rate_limited) as held:
                    reply, outcomes = self._send(held, request.system_context, prompt, batch_id, refs)
            except NoCredentialAvailable as e:
                if rate_limited:
                    raise TemporarilyExhausted(
                        f"All usable credentials are rate limited ({len(rate_limited)} tried)"
                    ) from e
                raise
            except ProviderRateLimited:
                rate_limited.add(held.credential_id)
                logger.warning(f"Credential {held.credential.nickname} rate limited; trying another credential")
                continue
            except (ProviderRequestError, ProviderMalformed) as e:
                logger.error(f"Inference call for batch {batch_id} failed: {e}")
                if isinstance(e, ProviderMalformed):
                    return {ref: SuggestionParseError(str(e)) for ref in refs}, self.client.model
                return provider_error_outcomes(refs, e.kind, str(e)), self.client.model
            except ProviderError as e:
                # Transient and not-sent failures
                last_error = e
                logger.warning(
                    f"Inference call for batch {batch_id} failed: {e} "
                    f"(attempt {attempt}/{retry.max_attempts})"
                )
            else:
                return outcomes, reply.model_id

            if attempt >= retry.max_attempts:
                break
            self._sleep(retry.delay_for(attempt))
            attempt += 1

        kind = last_error.kind if last_error else "provider_error"
        logger.error(f"Giving up on batch {batch_id} chunk after {retry.max_attempts} attempt(s)")
        return provider_error_outcomes(refs, kind, str(last_error or "")), self.client.model

    def _send(
        self,
        held: Reservation,
        system: str,
        prompt: str,
        batch_id: str,
        refs: list[str],
    ) -> tuple[InferenceReply, dict[str, SuggestionOutcome]]:
        """One call attempt; always logs exactly one usage entry."""
        try:
            reply = self.client.generate(held.credential.api_key, system, prompt)
        except ProviderNotSent as e:
            self._log_usage(held.credential_id, batch_id, len(refs), None, e.kind)
            raise
        except (ProviderError, ProviderMalformed) as e:
            held.mark_sent()
            self._log_usage(held.credential_id, batch_id, len(refs), None, e.kind)
            raise
        except BaseException:
            held.mark_sent()
            self._log_usage(held.credential_id, batch_id, len(refs), None, "interrupted")
            raise

        held.mark_sent()
        outcomes = parse_response(reply.text, refs)
        parsed = any(isinstance(o, SuggestionOk) for o in outcomes.values())
        self._log_usage(
            held.credential_id, batch_id, len(refs), reply, None if parsed else ProviderMalformed.kind
        )
        return reply, outcomes

    def _log_usage(
        self,
        credential_id: str,
        batch_id: str,
        record_count: int,
        reply: Optional[InferenceReply],
        error_kind: Optional[str],
    ):
        tokens = reply.total_tokens if reply else 0
        cost = tokens / 1_000_000 * self.config.semantic.cost_per_million_tokens
        self.allocator.record_usage(UsageLogEntry(
            credential_id=credential_id,
            batch_id=batch_id,
            records_attempted=record_count,
            tokens_used=tokens,
            success=error_kind is None,
            error_kind=error_kind,
            cost_estimate=round(cost, 6),
            timestamp=self._clock(),
        ))

    def _results_for(
        self,
        chunk: list[NormalizedRecord],
        outcomes: dict[str, SuggestionOutcome],
        index: CatalogIndex,
        model_id: str,
    ) -> list[MappingResult]:
        produced_at = self._clock()
        results = []

        for record in chunk:
            outcome = outcomes.get(record.ref, SuggestionParseError("No result returned for record"))

            if isinstance(outcome, SuggestionOk):
                try:
                    mapping = validate_suggestion(
                        outcome.suggestion,
                        index,
                        model_id=model_id,
                        produced_at=produced_at,
                        max_alternatives=self.config.semantic.max_alternatives,
                    )
                except HallucinatedSuggestion as e:
                    logger.warning(f"Record {record.record_id}: {e}; suggestion discarded")
                    results.append(MappingResult(
                        record_id=record.record_id,
                        status=RecordStatus.SEMANTIC_REJECTED,
                        detail=str(e),
                    ))
                    continue

                if mapping is None:
                    results.append(MappingResult(
                        record_id=record.record_id,
                        status=RecordStatus.UNRESOLVED,
                        detail="Inference service found no matching course",
                    ))
                else:
                    results.append(MappingResult(
                        record_id=record.record_id,
                        status=RecordStatus.SEMANTIC_MATCH,
                        secondary_mapping=mapping,
                        detail=f"Semantic suggestion at {mapping.confidence}% confidence",
                    ))
            elif isinstance(outcome, SuggestionProviderError):
                results.append(MappingResult(
                    record_id=record.record_id,
                    status=RecordStatus.SEMANTIC_FAILED,
                    detail=f"Provider error ({outcome.kind}): {outcome.message}".rstrip(": "),
                ))
            else:
                results.append(MappingResult(
                    record_id=record.record_id,
                    status=RecordStatus.SEMANTIC_FAILED,
                    detail=outcome.reason,
                ))

        return results
