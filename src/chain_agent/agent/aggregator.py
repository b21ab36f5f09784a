"""Merges fan-out sub-results into one attributed answer."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from chain_agent.errors import AllPartitionsFailedError
from chain_agent.types import AggregatedAnswer, PartitionResult, SourceFinding

logger = logging.getLogger(__name__)


class ResultAggregator:
    """Combines per-partition results while keeping source attribution.

    Every `PartitionResult` carries the identity of the partition it was
    produced for. Labels are always read from the result itself, so dropping
    failed partitions cannot shift a finding onto a neighbouring source.
    """

    def __init__(self, *, answer_key: str = "answer") -> None:
        self.answer_key = answer_key

    def aggregate(
        self, results: Sequence[PartitionResult], original_query: str
    ) -> AggregatedAnswer:
        failed: list[str] = []
        survivors: list[PartitionResult] = []
        for item in results:
            if item.success:
                survivors.append(item)
                continue
            failed.append(item.source_id)
            logger.warning(
                "Dropping failed partition %s (%s): %s",
                item.source_id,
                item.source_label,
                item.result.error or "no error detail",
            )

        if not survivors:
            raise AllPartitionsFailedError(failed)

        survivors.sort(key=lambda item: item.position)
        findings = [
            SourceFinding(
                source_id=item.source_id,
                source_label=item.source_label,
                answer=self._extract_answer(item),
                confidence=item.result.confidence,
            )
            for item in survivors
        ]
        confidence = sum(finding.confidence for finding in findings) / len(findings)

        logger.info(
            "Aggregated %d of %d partitions for query %r",
            len(findings),
            len(results),
            original_query[:100],
        )
        return AggregatedAnswer(
            query=original_query,
            per_source=findings,
            failed=failed,
            combined_text=_combine(findings),
            confidence=confidence,
        )

    def _extract_answer(self, item: PartitionResult) -> Any:
        data = item.result.data
        if isinstance(data, dict) and self.answer_key in data:
            return data[self.answer_key]
        return data


def _combine(findings: list[SourceFinding]) -> str:
    count = len(findings)
    noun = "conversation" if count == 1 else "conversations"
    sections = [f"From {finding.source_label}:\n{finding.answer}" for finding in findings]
    text = f"I found information in {count} {noun}:\n\n" + "\n\n".join(sections)
    if count > 1:
        labels = ", ".join(finding.source_label for finding in findings)
        text += f"\n\nSources: {labels}"
    return text
