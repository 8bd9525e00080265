"""
Deduplicator - Duplicate Group Detection

Groups records that share a DOI and proposes one primary per group.

Strategies:
1. DOI exact matching (always on)
2. TF-IDF title similarity with cosine distance >= threshold (off by default;
   when enabled a pair matching either criterion is grouped)

Within a group the record with the longest abstract becomes primary; ties go
to the record seen first. Records are never removed here; reviewers decide
keep/remove per record afterwards.
"""

import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Callable
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity
from dataclasses import dataclass, field, replace
import logging
import re
import uuid

from .screening_state import Record

logger = logging.getLogger(__name__)


@dataclass
class DuplicateDetectionResult:
    """Result of a detection pass"""
    records: List[Record]
    groups: Dict[str, List[str]] = field(default_factory=dict)  # group id -> member ids, input order
    primaries: Dict[str, str] = field(default_factory=dict)  # group id -> primary id
    doi_matches: int = 0
    title_matches: int = 0
    strategies_used: List[str] = field(default_factory=list)

    @property
    def group_count(self) -> int:
        return len(self.groups)

    @property
    def duplicate_count(self) -> int:
        return sum(len(members) for members in self.groups.values())

    @property
    def grouped_records(self) -> List[Record]:
        members = {rid for ids in self.groups.values() for rid in ids}
        return [r for r in self.records if r.id in members]


class Deduplicator:
    """
    Duplicate group detector for systematic review records

    Uses:
    - DOI matching (most reliable)
    - Title similarity using TF-IDF (disabled unless configured)
    """

    def __init__(
        self,
        use_title_similarity: bool = False,
        title_threshold: float = 0.95,
        min_title_length: int = 10,
        group_id_factory: Optional[Callable[[], str]] = None
    ):
        """
        Initialize deduplicator

        Args:
            use_title_similarity: Also group records with near-identical titles
            title_threshold: Cosine similarity threshold for title matching (0-1)
            min_title_length: Minimum cleaned title length for comparison
            group_id_factory: Callable producing new group ids (default: uuid4)
        """
        self.use_title_similarity = use_title_similarity
        self.title_threshold = title_threshold
        self.min_title_length = min_title_length
        self.group_id_factory = group_id_factory or (lambda: str(uuid.uuid4()))

    def find_duplicates(self, records: List[Record]) -> DuplicateDetectionResult:
        """
        Group probable duplicates and pick a primary per group

        Input records are not mutated; the result holds updated copies.
        Existing duplicate markings on records outside new groups are kept.

        Args:
            records: Full record set

        Returns:
            DuplicateDetectionResult with updated records and group details
        """
        logger.info(f"Starting duplicate detection on {len(records)} records")

        records = [replace(r) for r in records]
        dois = [self._clean_doi(r.doi) for r in records]
        similar = self._title_similarity_matrix(records) if self.use_title_similarity else None

        result = DuplicateDetectionResult(records=records)
        result.strategies_used.append("DOI matching")
        if similar is not None:
            result.strategies_used.append(f"Title similarity (>= {self.title_threshold})")

        processed = set()

        for i in range(len(records)):
            if i in processed:
                continue

            group = [i]
            group_id = None

            for j in range(i + 1, len(records)):
                if j in processed:
                    continue

                doi_match = bool(dois[i]) and dois[i] == dois[j]
                title_match = (
                    not doi_match
                    and similar is not None
                    and similar[i][j] >= self.title_threshold
                )

                if not (doi_match or title_match):
                    continue

                if group_id is None:
                    group_id = self.group_id_factory()
                    processed.add(i)

                group.append(j)
                processed.add(j)

                if doi_match:
                    result.doi_matches += 1
                else:
                    result.title_matches += 1

            if group_id is not None:
                self._close_group(result, group_id, group)

        logger.info(
            f"Duplicate detection complete: {result.group_count} groups, "
            f"{result.duplicate_count} records marked"
        )

        return result

    def _close_group(self, result: DuplicateDetectionResult, group_id: str, indices: List[int]):
        """Mark group members and select the primary (longest abstract, first wins ties)"""
        members = [result.records[k] for k in indices]

        primary = members[0]
        longest = len(primary.abstract or '')
        for member in members[1:]:
            length = len(member.abstract or '')
            if length > longest:
                longest = length
                primary = member

        for member in members:
            member.duplicate_group_id = group_id
            member.is_duplicate = True
            member.is_primary = member is primary

        result.groups[group_id] = [m.id for m in members]
        result.primaries[group_id] = primary.id

    @staticmethod
    def _clean_doi(doi: Optional[str]) -> str:
        if doi is None:
            return ''
        return str(doi).strip()

    @staticmethod
    def _clean_title(text: Optional[str]) -> str:
        """
        Clean title for comparison

        - Lowercase
        - Remove punctuation
        - Normalize whitespace
        """
        if text is None or pd.isna(text):
            return ""

        text = str(text).lower()
        text = re.sub(r'[^\w\s]', ' ', text)
        text = re.sub(r'\s+', ' ', text).strip()

        return text

    def _title_similarity_matrix(self, records: List[Record]) -> Optional[np.ndarray]:
        """
        Pairwise TF-IDF cosine similarity of titles

        Titles shorter than min_title_length never match anything.
        """
        titles = pd.Series([self._clean_title(r.title) for r in records], dtype=object)
        valid_mask = titles.str.len() >= self.min_title_length

        similarity = np.zeros((len(records), len(records)), dtype=np.float32)
        if valid_mask.sum() <= 1:
            logger.info("Not enough valid titles for similarity comparison")
            return similarity

        valid_positions = np.flatnonzero(valid_mask.to_numpy())

        vectorizer = TfidfVectorizer(
            ngram_range=(1, 2),
            min_df=1,
            dtype=np.float32
        )

        try:
            tfidf_matrix = vectorizer.fit_transform(titles[valid_mask])
        except ValueError as e:
            # Empty vocabulary, e.g. titles made only of punctuation
            logger.warning(f"Title similarity skipped: {e}")
            return similarity

        valid_similarity = cosine_similarity(tfidf_matrix)
        similarity[np.ix_(valid_positions, valid_positions)] = valid_similarity

        return similarity

    def generate_report(self, result: DuplicateDetectionResult) -> str:
        """
        Generate human-readable detection report

        Args:
            result: DuplicateDetectionResult object

        Returns:
            Formatted report string
        """
        by_id = {r.id: r for r in result.records}

        report = f"""
=== Duplicate Detection Report ===

Records scanned: {len(result.records)}
Duplicate groups: {result.group_count}
Records in groups: {result.duplicate_count}

Strategies used:
{chr(10).join(f'  - {s}' for s in result.strategies_used)}

Matches by strategy:
  - DOI: {result.doi_matches}
  - Title: {result.title_matches}
"""

        for i, (group_id, member_ids) in enumerate(list(result.groups.items())[:5], 1):
            primary = by_id[result.primaries[group_id]]
            report += f"\n{i}. Group {group_id[:8]} ({len(member_ids)} records)\n"
            report += f"   Primary: {(primary.title or '')[:100]}\n"
            if primary.doi:
                report += f"   DOI: {primary.doi}\n"

        return report
