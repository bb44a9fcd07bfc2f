"""
Booking system client — clinic days, slots and pricing for one consultant.

    GET {BOOKING_API_URL}/clinicdays/gmc/{code}?span=90&fromDate=YYYY-MM-DD
    GET {BOOKING_API_URL}/slots?uid=…&fromDate=…&gmcCode=…&hospitalId=…&sessionDays=0
    GET {BOOKING_OPEN_API_URL}/consultants/{code}/pricing/

Slot metrics are scoped to the next BOOKING_WINDOW_DAYS days; the next
available date is searched across the full lookahead span.
"""
import logging
import time
import uuid
from dataclasses import dataclass, asdict
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests

from consultant_audit.config import (
    BOOKING_API_URL, BOOKING_OPEN_API_URL, BOOKING_API_KEY, BOOKING_TIMEOUT,
    BOOKING_WINDOW_DAYS, BOOKING_LOOKAHEAD_DAYS,
)
from consultant_audit.errors import BookingApiError, BOOKING_API
from consultant_audit.logging_config import log_stage
from consultant_audit.services.retry import (
    RetryPolicy, TransientHTTPError, TRANSIENT_STATUS_CODES, call_with_retry,
    is_transient_request_error,
)

logger = logging.getLogger('consultant_audit.services.booking_api')

NOT_BOOKABLE = 'not_bookable'
BOOKABLE_NO_SLOTS = 'bookable_no_slots'
BOOKABLE_WITH_SLOTS = 'bookable_with_slots'


@dataclass
class BookingComparison:
    booking_state: str
    available_days_28d: int = 0
    available_slots_28d: int = 0
    next_available_date: Optional[str] = None
    days_to_first_available: Optional[int] = None
    consultation_price: Optional[float] = None
    listed_online: bool = False
    availability_consistent: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def not_bookable(listed_online: bool) -> BookingComparison:
    """Comparison for a profile the booking system is never asked about."""
    return BookingComparison(
        booking_state=NOT_BOOKABLE,
        listed_online=listed_online,
        # A profile that advertises booking but cannot be looked up is inconsistent
        availability_consistent=not listed_online,
    )


class BookingApiClient:
    def __init__(self, session=None, api_key=BOOKING_API_KEY, timeout=BOOKING_TIMEOUT,
                 retry_policy=None, sleep=None, today=None):
        self.session = session or requests.Session()
        self.api_key = api_key
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep or time.sleep
        self._today = today or date.today

    def compare(self, parsed, slug: str, progress: Optional[Tuple[int, int]] = None) -> BookingComparison:
        """
        Cross-check a ParsedProfile against the booking system.

        Profiles without a numeric booking code, or not listed as bookable
        online, are classified not_bookable without any request.
        """
        listed_online = bool(parsed.online_bookable)
        if not parsed.booking_code or not listed_online:
            reason = 'no booking code' if not parsed.booking_code else 'not listed as bookable online'
            log_stage(logger, logging.INFO, BOOKING_API, slug, 'not_bookable', reason, progress)
            return not_bookable(listed_online)

        code = parsed.booking_code
        from_date = self._today()
        cutoff = (from_date + timedelta(days=BOOKING_WINDOW_DAYS)).isoformat()

        clinic_days = self._get_json(
            f"{BOOKING_API_URL}/clinicdays/gmc/{code}",
            {'span': BOOKING_LOOKAHEAD_DAYS, 'fromDate': from_date.isoformat()},
            slug, progress,
        )
        slot_queries = _slot_queries(clinic_days)

        total_slots = 0
        dates_with_slots = set()
        earliest = None
        for day, hospital_id in slot_queries:
            try:
                data = self._get_json(
                    f"{BOOKING_API_URL}/slots",
                    {'uid': str(uuid.uuid4()), 'fromDate': day, 'gmcCode': code,
                     'hospitalId': hospital_id, 'sessionDays': 0},
                    slug, progress,
                )
            except BookingApiError as e:
                # A hospital with no slot calendar is not a consultant-level failure
                if e.not_found:
                    continue
                raise
            for slot_date in _slot_dates(data):
                if earliest is None or slot_date < earliest:
                    earliest = slot_date
                if slot_date[:10] < cutoff:
                    total_slots += 1
                    dates_with_slots.add(slot_date[:10])

        price = self._consultation_price(code, slug, progress)

        days_to_first = None
        if earliest:
            try:
                days_to_first = (date.fromisoformat(earliest[:10]) - from_date).days
            except ValueError:
                days_to_first = None

        comparison = BookingComparison(
            booking_state=BOOKABLE_WITH_SLOTS if total_slots > 0 else BOOKABLE_NO_SLOTS,
            available_days_28d=len(dates_with_slots),
            available_slots_28d=total_slots,
            next_available_date=earliest,
            days_to_first_available=days_to_first,
            consultation_price=price,
            listed_online=listed_online,
            availability_consistent=bool(slot_queries),
        )
        log_stage(logger, logging.INFO, BOOKING_API, slug, 'success',
                  f"{comparison.available_days_28d} days(28d), {total_slots} slots(28d), "
                  f"next={earliest or 'none'}, price: {price if price is not None else 'N/A'}", progress)
        return comparison

    # ── HTTP ─────────────────────────────────────────────────────────────────

    def _get_json(self, url, params, slug, progress):
        headers = {'Ocp-Apim-Subscription-Key': self.api_key}

        def _get():
            resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            if resp.status_code in TRANSIENT_STATUS_CODES:
                raise TransientHTTPError(resp.status_code, url)
            return resp

        def _on_retry(attempt, max_attempts, exc, delay):
            log_stage(logger, logging.WARNING, BOOKING_API, slug, 'retry',
                      f"{exc}, attempt {attempt}/{max_attempts}, waiting {delay:.1f}s", progress)

        try:
            resp = call_with_retry(_get, self.retry_policy, is_transient_request_error,
                                   on_retry=_on_retry, sleep=self._sleep)
        except TransientHTTPError as e:
            raise BookingApiError(f"HTTP {e.status_code} after {self.retry_policy.max_attempts} attempts",
                                  slug, cause=e, code='http_error')
        except requests.exceptions.Timeout as e:
            raise BookingApiError(f"Booking API timed out: {url}", slug, cause=e, code='timeout')
        except requests.exceptions.RequestException as e:
            raise BookingApiError(f"Booking API request failed: {e}", slug, cause=e, code='unreachable')

        if resp.status_code == 404:
            raise BookingApiError("Consultant not found in booking system", slug, code='not_found')
        if resp.status_code in (401, 403):
            raise BookingApiError(f"Booking API rejected credentials (HTTP {resp.status_code})",
                                  slug, code='auth')
        if not 200 <= resp.status_code < 300:
            raise BookingApiError(f"HTTP {resp.status_code} from {url}", slug, code='http_error')

        try:
            return resp.json()
        except ValueError as e:
            raise BookingApiError(f"Invalid JSON from {url}", slug, cause=e, code='malformed')

    def _consultation_price(self, code, slug, progress) -> Optional[float]:
        try:
            data = self._get_json(f"{BOOKING_OPEN_API_URL}/consultants/{code}/pricing/", None, slug, progress)
        except BookingApiError as e:
            if e.not_found:
                return None
            raise
        return _lowest_price(data)


# ── Response helpers ─────────────────────────────────────────────────────────

def _slot_queries(clinic_days) -> List[Tuple[str, str]]:
    """Unique (date, hospitalId) pairs from a clinicdays response, in order."""
    results = clinic_days.get('results') if isinstance(clinic_days, dict) else None
    pairs = []
    seen = set()
    for day in results or []:
        day_date = day.get('date') if isinstance(day, dict) else None
        if not day_date:
            continue
        for loc in day.get('locations') or []:
            hospital_id = loc.get('hospitalId') if isinstance(loc, dict) else None
            if hospital_id and (day_date, hospital_id) not in seen:
                seen.add((day_date, hospital_id))
                pairs.append((day_date, str(hospital_id)))
    return pairs


def _slot_dates(data) -> List[str]:
    if not isinstance(data, dict):
        return []
    details = ((data.get('response') or {}).get('responseData') or {}).get('bookingDetails') or []
    return [s['slotDate'] for s in details if isinstance(s, dict) and s.get('slotDate')]


def _to_price(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _lowest_price(data) -> Optional[float]:
    entries = data if isinstance(data, list) else [data]
    prices = [_to_price(e.get('price')) for e in entries if isinstance(e, dict)]
    prices = [p for p in prices if p is not None]
    return min(prices) if prices else None
