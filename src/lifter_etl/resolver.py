"""lifter_etl.resolver

Identity resolution for scraped lifter results.

Given a scraped athlete name plus optional auxiliary signals, return exactly
one Person, creating one only when no existing Person can be matched.

Strategies, in strict priority order (first success wins):
  1. external_id            — Person holding the supplied external id in
                              either slot.  Authoritative; never creates.
  2. name                   — exact (trimmed, case-sensitive) display_name
                              equality.  Candidates whose stored birth_year or
                              country_code contradicts a supplied value are
                              removed first; unset stored values never block.
                              Zero left → create.  One → match + enrich.
  3. Disambiguation among several same-name candidates:
     3a. name_country_birth_year — both supplied, exactly one stored match.
     3b. verification            — external profile lookup (worker thread,
                                   policy timeout; timeout = unavailable).
     3b'. participation          — verification unavailable or not
                                   configured; candidate competed at the
                                   supplied competition_id.
     3b''. auxiliary_profile     — no external_id supplied; exactly one
                                   candidate whose (birth_year, country_code)
                                   pair equals the supplied pair, unknown
                                   matching only unknown.
     3c. create + disambiguation_failed conflict.  A wrong merge corrupts
         history irreversibly; a wrong split can be reconciled later.
         When no external_id is supplied and the newest candidate has no
         external_id and exactly the supplied profile, it is returned
         instead (still with the conflict), so repeated calls do not keep
         splitting.

Every creation runs through the duplicate guard: re-query the external id
immediately before inserting, and treat a unique-constraint failure on the
insert as a lost race (re-query and return the winner).

Ambiguity is never raised: it is written to the conflict log.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from lifter_etl.conflict_log import (
    DISAMBIGUATION_FAILED,
    DUPLICATE_EXTERNAL_ID,
    ENRICHMENT_BLOCKED,
    EXTERNAL_ID_NAME_MISMATCH,
    EXTERNAL_ID_SLOTS_FULL,
    MULTIPLE_BIRTH_YEARS,
    ConflictLog,
    ConflictRecord,
)
from lifter_etl.normalize import MAX_BIRTH_YEAR, MIN_BIRTH_YEAR, trim
from lifter_etl.person_store import ParticipationStore, PersonStore
from lifter_etl.resolution_policy import ResolutionPolicy
from lifter_etl.shared import (
    Auxiliary,
    ExternalIdTakenError,
    InvalidInputError,
    Person,
    RunCounters,
    VerificationUnavailableError,
)
from lifter_etl.verification import (
    FOUND,
    NOT_FOUND,
    UNAVAILABLE,
    VerificationResult,
    Verifier,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Strategies and confidence tiers
# ---------------------------------------------------------------------------

STRATEGY_EXTERNAL_ID = "external_id"
STRATEGY_NAME = "name"
STRATEGY_NAME_COUNTRY_BIRTH_YEAR = "name_country_birth_year"
STRATEGY_VERIFICATION = "verification"
STRATEGY_PARTICIPATION = "participation"
STRATEGY_AUXILIARY_PROFILE = "auxiliary_profile"
STRATEGY_CREATED = "created"
STRATEGY_DUPLICATE_GUARD = "duplicate_guard"

CONFIDENCE = {
    STRATEGY_EXTERNAL_ID: 1.0,
    STRATEGY_VERIFICATION: 0.95,
    STRATEGY_NAME_COUNTRY_BIRTH_YEAR: 0.9,
    STRATEGY_PARTICIPATION: 0.85,
    STRATEGY_NAME: 0.8,
    STRATEGY_AUXILIARY_PROFILE: 0.7,
    STRATEGY_CREATED: 1.0,
    STRATEGY_DUPLICATE_GUARD: 1.0,
}


# ---------------------------------------------------------------------------
# Match trace + result
# ---------------------------------------------------------------------------

@dataclass
class MatchTrace:
    """Ordered decision steps of one resolve call, keyed by a session id."""

    name: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    steps: list[dict[str, Any]] = field(default_factory=list)

    def add(self, step: str, outcome: str, **data: Any) -> None:
        entry = {"step": step, "outcome": outcome, **data}
        self.steps.append(entry)
        log.debug("[%s] %r %s → %s %s", self.session_id[:8], self.name, step, outcome, data)

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "name": self.name,
            "path": [f"{s['step']}:{s['outcome']}" for s in self.steps],
        }


@dataclass
class Resolution:
    person: Person
    strategy: str
    confidence: float
    created: bool = False
    enriched: bool = False
    conflicts: list[ConflictRecord] = field(default_factory=list)
    trace: MatchTrace | None = None


@dataclass
class _Call:
    name: str
    aux: Auxiliary
    trace: MatchTrace
    conflicts: list[ConflictRecord] = field(default_factory=list)
    enriched: bool = False
    verification_status: str | None = None


def _ids(persons: list[Person]) -> list[int]:
    return [p.person_id for p in persons]


def _contradicts(person: Person, aux: Auxiliary) -> bool:
    """True when a set stored demographic differs from a supplied one."""
    if (
        aux.birth_year is not None
        and person.birth_year is not None
        and person.birth_year != aux.birth_year
    ):
        return True
    if (
        aux.country_code is not None
        and person.country_code is not None
        and person.country_code != aux.country_code
    ):
        return True
    return False


def _validate_auxiliary(aux: Auxiliary) -> None:
    eid = aux.external_id
    if eid is not None and (isinstance(eid, bool) or not isinstance(eid, int) or eid <= 0):
        raise InvalidInputError(f"external_id must be a positive integer, got {eid!r}")
    by = aux.birth_year
    if by is not None and (
        isinstance(by, bool)
        or not isinstance(by, int)
        or not (MIN_BIRTH_YEAR <= by <= MAX_BIRTH_YEAR)
    ):
        raise InvalidInputError(
            f"birth_year must be within {MIN_BIRTH_YEAR}..{MAX_BIRTH_YEAR}, got {by!r}"
        )
    if aux.country_code is not None and not trim(aux.country_code):
        raise InvalidInputError("country_code must not be blank")


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class IdentityResolver:
    """Resolve scraped names to Persons.  Collaborators are injected."""

    def __init__(
        self,
        person_store: PersonStore,
        conflict_log: ConflictLog,
        verifier: Verifier | None = None,
        participation_store: ParticipationStore | None = None,
        policy: ResolutionPolicy | None = None,
        counters: RunCounters | None = None,
    ) -> None:
        self._store = person_store
        self._conflicts = conflict_log
        self._verifier = verifier
        self._participation = participation_store
        self._policy = policy or ResolutionPolicy()
        self.counters = counters if counters is not None else RunCounters()

    # -- public -------------------------------------------------------------

    def resolve(self, name: str, auxiliary: Auxiliary | None = None) -> Person:
        return self.resolve_detailed(name, auxiliary).person

    def resolve_detailed(self, name: str, auxiliary: Auxiliary | None = None) -> Resolution:
        """Resolve one scraped record.

        Raises:
            InvalidInputError: blank name or malformed auxiliary values.
            StoreUnavailableError: propagated from the stores, never retried.
        """
        clean = trim(name) if isinstance(name, str) else None
        if not clean:
            raise InvalidInputError("athlete name is empty")
        aux = auxiliary or Auxiliary()
        _validate_auxiliary(aux)

        call = _Call(name=clean, aux=aux, trace=MatchTrace(clean))

        if aux.external_id is not None:
            resolution = self._match_external_id(call)
            if resolution is not None:
                return resolution

        return self._match_name(call)

    # -- step 1 -------------------------------------------------------------

    def _match_external_id(self, call: _Call) -> Resolution | None:
        eid = call.aux.external_id
        matches = self._store.find_by_external_id(eid)
        call.trace.add(STRATEGY_EXTERNAL_ID, f"{len(matches)} match(es)", candidates=_ids(matches))

        if not matches:
            return None

        if len(matches) == 1:
            person = matches[0]
            if person.display_name != call.name:
                person = self._handle_name_mismatch(call, person)
            person = self._fill_demographics(call, person)
            return self._finish(call, person, STRATEGY_EXTERNAL_ID)

        same_name = [p for p in matches if p.display_name == call.name]
        if len(same_name) == 1:
            call.trace.add(STRATEGY_EXTERNAL_ID, "name tie-break", chosen=same_name[0].person_id)
            return self._finish(call, same_name[0], STRATEGY_EXTERNAL_ID)

        chosen = matches[0]
        self._record(
            call,
            DUPLICATE_EXTERNAL_ID,
            matches,
            chosen,
            f"external_id {eid} held by {len(matches)} persons; lowest person_id chosen",
        )
        return self._finish(call, chosen, STRATEGY_EXTERNAL_ID)

    def _handle_name_mismatch(self, call: _Call, person: Person) -> Person:
        if not person.display_name:
            call.trace.add(STRATEGY_EXTERNAL_ID, "display_name filled")
            call.enriched = True
            return self._store.fill_person(person.person_id, display_name=call.name)

        self._record(
            call,
            EXTERNAL_ID_NAME_MISMATCH,
            [person],
            person,
            f"stored name {person.display_name!r}",
        )
        if self._policy.overwrite_display_name:
            call.trace.add(STRATEGY_EXTERNAL_ID, "display_name overwritten")
            call.enriched = True
            return self._store.rename_person(person.person_id, call.name)
        return person

    # -- step 2 -------------------------------------------------------------

    def _match_name(self, call: _Call) -> Resolution:
        by_name = self._store.find_by_name(call.name)
        candidates = [p for p in by_name if not _contradicts(p, call.aux)]
        blocked = [p.person_id for p in by_name if _contradicts(p, call.aux)]
        call.trace.add(
            STRATEGY_NAME,
            f"{len(candidates)} candidate(s)",
            candidates=_ids(candidates),
            blocked=blocked,
        )

        if not candidates:
            return self._create(call)

        if len(candidates) == 1:
            person = self._enrich(call, candidates[0])
            return self._finish(call, person, STRATEGY_NAME)

        return self._disambiguate(call, candidates)

    # -- step 3 -------------------------------------------------------------

    def _disambiguate(self, call: _Call, candidates: list[Person]) -> Resolution:
        aux = call.aux

        # 3a
        if aux.birth_year is not None and aux.country_code is not None:
            survivors = self._store.find_by_name_country_birth_year(
                call.name, aux.country_code, aux.birth_year
            )
            call.trace.add(
                STRATEGY_NAME_COUNTRY_BIRTH_YEAR,
                f"{len(survivors)} survivor(s)",
                candidates=_ids(survivors),
            )
            if len(survivors) == 1:
                person = self._enrich(call, survivors[0])
                return self._finish(call, person, STRATEGY_NAME_COUNTRY_BIRTH_YEAR)
            if survivors:
                candidates = survivors

        # 3b
        resolution = self._disambiguate_by_verification(call, candidates)
        if resolution is not None:
            return resolution

        # 3b'
        resolution = self._disambiguate_by_participation(call, candidates)
        if resolution is not None:
            return resolution

        # 3b''
        if aux.external_id is None:
            pair = (aux.birth_year, aux.country_code)
            same = [c for c in candidates if (c.birth_year, c.country_code) == pair]
            call.trace.add(
                STRATEGY_AUXILIARY_PROFILE, f"{len(same)} match(es)", candidates=_ids(same)
            )
            if len(same) == 1:
                person = self._enrich(call, same[0])
                return self._finish(call, person, STRATEGY_AUXILIARY_PROFILE)

        # 3c
        return self._create_after_failed_disambiguation(call, candidates)

    def _disambiguate_by_verification(
        self, call: _Call, candidates: list[Person]
    ) -> Resolution | None:
        if self._verifier is None or not self._policy.verification_enabled:
            call.trace.add(STRATEGY_VERIFICATION, "not configured")
            return None
        if call.aux.competition.is_empty:
            call.trace.add(STRATEGY_VERIFICATION, "skipped: no competition context")
            return None

        result = self._verify(call)
        call.verification_status = result.status
        call.trace.add(
            STRATEGY_VERIFICATION, result.status,
            external_id=result.external_id, detail=result.detail,
        )
        if result.status != FOUND:
            return None

        vid = result.external_id
        holders = [c for c in candidates if c.holds_external_id(vid)]
        if len(holders) == 1:
            person = self._enrich(call, holders[0])
            return self._finish(call, person, STRATEGY_VERIFICATION)

        supplied = call.aux.external_id
        if holders or (supplied is not None and supplied != vid):
            call.trace.add(STRATEGY_VERIFICATION, "inconclusive", verified=vid, supplied=supplied)
            call.verification_status = "inconclusive"
            return None

        empty = [c for c in candidates if c.external_id is None]
        if len(empty) != 1:
            call.trace.add(STRATEGY_VERIFICATION, "inconclusive", empty_slots=_ids(empty))
            call.verification_status = "inconclusive"
            return None

        target = empty[0]
        others = [p for p in self._store.find_by_external_id(vid) if p.person_id != target.person_id]
        if others:
            self._record(
                call,
                ENRICHMENT_BLOCKED,
                [target, *others],
                None,
                f"verified external_id {vid} already held by person(s) {_ids(others)}",
            )
            call.verification_status = "inconclusive"
            return None

        person = self._apply_fill(call, target, {"external_id": vid})
        person = self._fill_demographics(call, person)
        return self._finish(call, person, STRATEGY_VERIFICATION)

    def _verify(self, call: _Call) -> VerificationResult:
        """Run the verifier on a daemon thread bounded by the policy timeout.

        A verifier still blocked after the timeout is abandoned; being a
        daemon thread it never holds up interpreter exit.  Verifiers should
        still bound their own I/O (Sport80Verifier passes the same timeout
        to requests).
        """
        self.counters.verification_calls += 1
        timeout = self._policy.verification_timeout_seconds
        outcome: dict[str, Any] = {}

        def run() -> None:
            try:
                outcome["result"] = self._verifier.verify(call.name, call.aux.competition)
            except VerificationUnavailableError as exc:
                outcome["result"] = VerificationResult.unavailable(str(exc))
            except Exception as exc:
                outcome["error"] = exc

        worker = threading.Thread(target=run, name="verify", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            result = VerificationResult.unavailable(f"timed out after {timeout}s")
        elif "error" in outcome:
            raise outcome["error"]
        else:
            result = outcome["result"]

        if result.status == UNAVAILABLE:
            self.counters.verification_unavailable += 1
            log.warning("verification unavailable for %r: %s", call.name, result.detail)
        elif result.status == NOT_FOUND:
            self.counters.verification_not_found += 1
        return result

    def _disambiguate_by_participation(
        self, call: _Call, candidates: list[Person]
    ) -> Resolution | None:
        competition_id = call.aux.competition.competition_id
        if (
            self._participation is None
            or not self._policy.participation_signal
            or competition_id is None
            or call.verification_status not in (None, UNAVAILABLE)
        ):
            return None

        kept = [
            c for c in candidates
            if self._participation.has_participation(c.person_id, competition_id)
        ]
        call.trace.add(STRATEGY_PARTICIPATION, f"{len(kept)} match(es)", candidates=_ids(kept))
        if len(kept) == 1:
            person = self._enrich(call, kept[0])
            return self._finish(call, person, STRATEGY_PARTICIPATION)
        return None

    def _create_after_failed_disambiguation(
        self, call: _Call, candidates: list[Person]
    ) -> Resolution:
        aux = call.aux
        newest = max(candidates, key=lambda c: c.person_id)
        if (
            aux.external_id is None
            and newest.external_id is None
            and (newest.birth_year, newest.country_code) == (aux.birth_year, aux.country_code)
        ):
            # Creating would add a Person indistinguishable from the newest
            # split; reuse it so repeated calls settle on one person_id.
            call.trace.add(STRATEGY_AUXILIARY_PROFILE, "reused newest split", person_id=newest.person_id)
            self._record(
                call,
                DISAMBIGUATION_FAILED,
                candidates,
                newest,
                f"{len(candidates)} same-name candidates share the supplied profile; "
                f"reused newest person {newest.person_id}",
            )
            return self._finish(call, newest, STRATEGY_AUXILIARY_PROFILE)

        if aux.country_code is not None and aux.birth_year is None:
            years = sorted({
                c.birth_year for c in candidates
                if c.country_code == aux.country_code and c.birth_year is not None
            })
            if len(years) > 1:
                self._record(
                    call,
                    MULTIPLE_BIRTH_YEARS,
                    candidates,
                    None,
                    f"{aux.country_code} candidates carry birth years {years}; none supplied",
                )

        resolution = self._create(call)
        if resolution.created:
            reason = call.verification_status or "verification not attempted"
            self._record(
                call,
                DISAMBIGUATION_FAILED,
                candidates,
                resolution.person,
                f"{len(candidates)} same-name candidates; verification: {reason}",
            )
            resolution.conflicts = list(call.conflicts)
        return resolution

    # -- creation + duplicate guard -------------------------------------------

    def _create(self, call: _Call) -> Resolution:
        aux = call.aux
        eid = aux.external_id

        if eid is not None:
            existing = self._store.find_by_external_id(eid)
            if existing:
                return self._duplicate_prevented(call, existing, "pre-insert re-check")

        try:
            person = self._store.insert_person(
                call.name,
                external_id=eid,
                birth_year=aux.birth_year,
                country_code=aux.country_code,
            )
        except ExternalIdTakenError:
            existing = self._store.find_by_external_id(eid) if eid is not None else []
            if not existing:
                raise
            return self._duplicate_prevented(call, existing, "unique constraint on insert")

        call.trace.add("create", "inserted", person_id=person.person_id)
        log.info(
            "created person %s %r (external_id=%s birth_year=%s country=%s)",
            person.person_id, person.display_name,
            person.external_id, person.birth_year, person.country_code,
        )
        return self._finish(call, person, STRATEGY_CREATED, created=True)

    def _duplicate_prevented(self, call: _Call, existing: list[Person], how: str) -> Resolution:
        self.counters.duplicates_prevented += 1
        call.trace.add("create", "duplicate prevented", how=how, person_id=existing[0].person_id)
        log.info(
            "duplicate prevented for %r: external_id %s already held by person %s (%s)",
            call.name, call.aux.external_id, existing[0].person_id, how,
        )
        return self._finish(call, existing[0], STRATEGY_DUPLICATE_GUARD)

    # -- enrichment -----------------------------------------------------------

    def _enrich(self, call: _Call, person: Person) -> Person:
        """Attach the supplied external id to a free slot and fill demographics."""
        eid = call.aux.external_id
        updates: dict[str, Any] = {}

        if eid is not None and not person.holds_external_id(eid):
            if not person.has_free_external_id_slot:
                self._record(
                    call,
                    EXTERNAL_ID_SLOTS_FULL,
                    [person],
                    person,
                    f"external_id {eid} not attached; slots hold "
                    f"{person.external_id} and {person.secondary_external_id}",
                )
            else:
                others = [
                    p for p in self._store.find_by_external_id(eid)
                    if p.person_id != person.person_id
                ]
                if others:
                    self._record(
                        call,
                        ENRICHMENT_BLOCKED,
                        [person, *others],
                        person,
                        f"external_id {eid} already held by person(s) {_ids(others)}",
                    )
                elif person.external_id is None:
                    updates["external_id"] = eid
                else:
                    updates["secondary_external_id"] = eid

        if updates:
            person = self._apply_fill(call, person, updates)
        return self._fill_demographics(call, person)

    def _fill_demographics(self, call: _Call, person: Person) -> Person:
        if not self._policy.fill_demographics:
            return person
        updates: dict[str, Any] = {}
        if person.birth_year is None and call.aux.birth_year is not None:
            updates["birth_year"] = call.aux.birth_year
        if person.country_code is None and call.aux.country_code is not None:
            updates["country_code"] = call.aux.country_code
        if not updates:
            return person
        return self._apply_fill(call, person, updates)

    def _apply_fill(self, call: _Call, person: Person, updates: dict[str, Any]) -> Person:
        try:
            filled = self._store.fill_person(person.person_id, **updates)
        except ExternalIdTakenError as exc:
            self._record(
                call,
                ENRICHMENT_BLOCKED,
                [person],
                person,
                f"external_id {exc.external_id} taken during enrichment",
            )
            remaining = {
                k: v for k, v in updates.items()
                if k not in ("external_id", "secondary_external_id")
            }
            if not remaining:
                return person
            filled = self._store.fill_person(person.person_id, **remaining)

        call.trace.add("enrich", "filled", person_id=person.person_id, fields=sorted(updates))
        log.info("enriched person %s: %s", person.person_id, sorted(updates))
        call.enriched = True
        return filled

    # -- bookkeeping ----------------------------------------------------------

    def _record(
        self,
        call: _Call,
        reason: str,
        candidates: list[Person],
        chosen: Person | None,
        detail: str,
    ) -> None:
        conflict = ConflictRecord(
            reason=reason,
            incoming_name=call.name,
            supplied=call.aux.to_dict(),
            candidate_person_ids=_ids(candidates),
            chosen_person_id=chosen.person_id if chosen else None,
            detail=detail,
        )
        self._conflicts.record(conflict)
        call.conflicts.append(conflict)
        call.trace.add("conflict", reason, detail=detail)
        self.counters.conflicts_recorded += 1

    def _finish(
        self, call: _Call, person: Person, strategy: str, created: bool = False
    ) -> Resolution:
        if created:
            self.counters.persons_created += 1
        else:
            self.counters.persons_matched_existing += 1
        if call.enriched:
            self.counters.persons_enriched += 1
        self.counters.count_strategy(strategy)
        call.trace.add("result", strategy, person_id=person.person_id)
        return Resolution(
            person=person,
            strategy=strategy,
            confidence=CONFIDENCE[strategy],
            created=created,
            enriched=call.enriched,
            conflicts=list(call.conflicts),
            trace=call.trace,
        )
