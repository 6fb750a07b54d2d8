"""
Saved Results Query

Search, filter, sort and paginate saved review results for the results page,
plus summary statistics and the bulk JSON export.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.result_store import utc_timestamp

PAGE_SIZE = 10

SORT_FIELDS = ('date', 'name', 'detections')
STATUS_FILTERS = ('all', 'pass', 'fail')


def _detection_count(record: Dict[str, Any]) -> int:
    return len(record.get('detections') or [])


def _sort_key(sort_by: str):
    if sort_by == 'name':
        return lambda r: (r.get('imageName') or '').lower()
    if sort_by == 'detections':
        return _detection_count
    return lambda r: r.get('timestamp') or ''


@dataclass
class ResultsPage:
    """One page of the filtered listing."""
    items: List[Dict[str, Any]]
    page: int
    total_pages: int
    total_items: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'items': self.items,
            'page': self.page,
            'totalPages': self.total_pages,
            'totalItems': self.total_items,
        }


@dataclass
class ResultsQuery:
    """Listing parameters for the saved results table."""
    search: str = ''
    status: str = 'all'
    sort_by: str = 'date'
    descending: bool = True
    page: int = 1
    page_size: int = PAGE_SIZE

    def __post_init__(self):
        if self.status not in STATUS_FILTERS:
            raise ValueError(f"status must be one of {STATUS_FILTERS}, got {self.status!r}")
        if self.sort_by not in SORT_FIELDS:
            raise ValueError(f"sort_by must be one of {SORT_FIELDS}, got {self.sort_by!r}")
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")

    def filter(self, results: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        term = self.search.strip().lower()
        filtered = []
        for record in results:
            if term and term not in (record.get('imageName') or '').lower():
                continue
            if self.status != 'all' and record.get('uatStatus') != self.status:
                continue
            filtered.append(record)
        return sorted(filtered, key=_sort_key(self.sort_by), reverse=self.descending)

    def paginate(self, results: Iterable[Dict[str, Any]]) -> ResultsPage:
        filtered = self.filter(results)
        total_pages = max(1, math.ceil(len(filtered) / self.page_size))
        page = min(max(1, self.page), total_pages)
        start = (page - 1) * self.page_size
        return ResultsPage(
            items=filtered[start:start + self.page_size],
            page=page,
            total_pages=total_pages,
            total_items=len(filtered),
        )


def summarize(results: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Totals over every saved result, independent of filters."""
    results = list(results)
    return {
        'total': len(results),
        'pass': sum(1 for r in results if r.get('uatStatus') == 'pass'),
        'fail': sum(1 for r in results if r.get('uatStatus') == 'fail'),
        'totalDetections': sum(_detection_count(r) for r in results),
    }


def class_counts(detections: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for det in detections:
        name = det.get('class_name', '')
        counts[name] = counts.get(name, 0) + 1
    return counts


def page_detections(record: Dict[str, Any], page_number: int) -> List[Dict[str, Any]]:
    """Detections of one page of a saved PDF record; all detections for images."""
    detections = [d for d in record.get('detections') or [] if isinstance(d, dict)]
    if not record.get('isPDF'):
        return detections
    return [d for d in detections if (d.get('page') or 1) == page_number]


def find_result(results: Iterable[Dict[str, Any]], result_id: str) -> Optional[Dict[str, Any]]:
    return next((r for r in results if r.get('id') == result_id), None)


def export_payload(results: List[Dict[str, Any]],
                   selected_ids: Optional[Iterable[str]] = None,
                   source_file: str = '',
                   today: Optional[datetime] = None) -> Tuple[str, Dict[str, Any]]:
    """
    Build a bulk export of saved results.

    Exports the selected ids when any are given, otherwise everything.
    Returns (filename, payload).
    """
    selected = set(selected_ids or ())
    if selected:
        exported = [r for r in results if r.get('id') in selected]
        scope = 'selected'
    else:
        exported = list(results)
        scope = 'all'

    date = (today or datetime.now()).strftime('%Y-%m-%d')
    filename = f"uat_{scope}_{len(exported)}_{date}.json"
    payload = {
        'results': exported,
        'exportedAt': utc_timestamp(),
        'totalExported': len(exported),
        'sourceFile': source_file,
    }
    return filename, payload
