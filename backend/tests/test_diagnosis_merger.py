"""Tests for the diagnosis merger."""

import uuid
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from drknowsit.models import Patient, UserTokenLimit
from drknowsit.schemas.diagnosis import DiagnosisCandidate
from drknowsit.services.diagnosis_merger import (
    MAX_DIAGNOSES,
    MAX_PERSIST_ATTEMPTS,
    dump_candidates,
    load_candidates,
    merge_diagnoses,
    persist_merged_diagnoses,
)

TEST_USER_ID = "test-user"
OTHER_USER_ID = "other-user"
NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


def _c(name: str, confidence: float) -> DiagnosisCandidate:
    return DiagnosisCandidate(name=name, confidence=confidence)


class TestMergeDiagnoses:
    """Tests for the pure merge."""

    def test_replace_by_name_and_sort(self):
        merged = merge_diagnoses([_c("A", 0.5)], [_c("A", 0.7), _c("B", 0.9)], now=NOW)

        assert [(c.name, c.confidence) for c in merged] == [("B", 0.9), ("A", 0.7)]
        assert all(c.updated_at == NOW for c in merged)

    def test_last_write_wins_even_with_lower_confidence(self):
        merged = merge_diagnoses([_c("A", 0.9)], [_c("A", 0.2)], now=NOW)

        assert [(c.name, c.confidence) for c in merged] == [("A", 0.2)]

    def test_capped_at_max(self):
        existing = [_c(f"E{i}", 0.1 * i) for i in range(4)]
        new = [_c(f"N{i}", 0.15 * i) for i in range(4)]

        merged = merge_diagnoses(existing, new, now=NOW)

        assert len(merged) == MAX_DIAGNOSES
        confidences = [c.confidence for c in merged]
        assert confidences == sorted(confidences, reverse=True)

    def test_empty_new_returns_existing_untouched(self):
        existing = [_c("A", 0.2), _c("B", 0.8)]

        merged = merge_diagnoses(existing, [], now=NOW)

        assert merged == existing
        assert all(c.updated_at is None for c in merged)

    @pytest.mark.parametrize("rounds", [1, 3, 10])
    def test_cap_invariant_over_repeated_merges(self, rounds):
        current: list[DiagnosisCandidate] = []
        for r in range(rounds):
            new = [_c(f"T{r}-{i}", ((r * 7 + i * 3) % 10) / 10) for i in range(3)]
            current = merge_diagnoses(current, new, now=NOW)
            assert len(current) <= MAX_DIAGNOSES
            confidences = [c.confidence for c in current]
            assert confidences == sorted(confidences, reverse=True)

    def test_equal_confidence_keeps_insertion_order(self):
        merged = merge_diagnoses([_c("A", 0.5)], [_c("B", 0.5)], now=NOW)

        assert [c.name for c in merged] == ["A", "B"]


class TestStoredCandidates:
    def test_load_skips_malformed_entries(self):
        raw = [
            {"name": "Flu", "confidence": 0.4},
            {"name": "", "confidence": 0.2},
            {"confidence": 0.9},
            "junk",
        ]

        assert [c.name for c in load_candidates(raw)] == ["Flu"]

    def test_dump_is_json_ready(self):
        dumped = dump_candidates([DiagnosisCandidate(name="Flu", confidence=0.4, updated_at=NOW)])

        assert dumped == [
            {"name": "Flu", "confidence": 0.4, "reasoning": "", "updated_at": "2026-03-14T12:00:00Z"}
        ]

    def test_load_none(self):
        assert load_candidates(None) == []


class TestPersistMergedDiagnoses:
    """Tests for the versioned read-merge-write."""

    @pytest.mark.asyncio
    async def test_persists_and_bumps_version(self, db_session, patient_in_db):
        merged = await persist_merged_diagnoses(
            db_session, patient_in_db, TEST_USER_ID, [_c("Migraine", 0.6)], now=NOW
        )

        assert [c.name for c in merged] == ["Migraine"]
        patient = (
            await db_session.execute(
                select(Patient)
                .where(Patient.id == patient_in_db)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        assert patient.probable_diagnoses[0]["name"] == "Migraine"
        assert patient.version == 2

    @pytest.mark.asyncio
    async def test_merges_with_stored_list(self, db_session, patient_in_db):
        await persist_merged_diagnoses(db_session, patient_in_db, TEST_USER_ID, [_c("A", 0.5)], now=NOW)

        merged = await persist_merged_diagnoses(
            db_session, patient_in_db, TEST_USER_ID, [_c("A", 0.7), _c("B", 0.9)], now=NOW
        )

        assert [(c.name, c.confidence) for c in merged] == [("B", 0.9), ("A", 0.7)]

    @pytest.mark.asyncio
    async def test_foreign_patient_untouched(self, db_session, foreign_patient_in_db):
        result = await persist_merged_diagnoses(
            db_session, foreign_patient_in_db, TEST_USER_ID, [_c("A", 0.5)], now=NOW
        )

        assert result is None

    @pytest.mark.asyncio
    async def test_missing_patient(self, db_session):
        assert await persist_merged_diagnoses(db_session, uuid.uuid4(), OTHER_USER_ID, [_c("A", 0.5)]) is None

    @pytest.mark.asyncio
    async def test_retries_after_concurrent_update(self, db_session, patient_in_db):
        real_flush = db_session.flush
        calls = 0

        async def flaky_flush(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StaleDataError("patients row was updated concurrently")
            return await real_flush(*args, **kwargs)

        with patch.object(db_session, "flush", side_effect=flaky_flush):
            merged = await persist_merged_diagnoses(
                db_session, patient_in_db, TEST_USER_ID, [_c("Asthma", 0.4)], now=NOW
            )

        assert calls == 2
        assert [c.name for c in merged] == ["Asthma"]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, db_session, patient_in_db):
        async def always_stale(*args, **kwargs):
            raise StaleDataError("patients row was updated concurrently")

        with patch.object(db_session, "flush", side_effect=always_stale) as mock_flush:
            with pytest.raises(StaleDataError):
                await persist_merged_diagnoses(
                    db_session, patient_in_db, TEST_USER_ID, [_c("Asthma", 0.4)], now=NOW
                )

        assert mock_flush.call_count == MAX_PERSIST_ATTEMPTS

    @pytest.mark.asyncio
    async def test_lost_race_keeps_earlier_writes(self, db_session, patient_in_db):
        db_session.add(UserTokenLimit(user_id=TEST_USER_ID, current_tokens=42, can_chat=True))
        await db_session.flush()
        real_flush = db_session.flush
        calls = 0

        async def flaky_flush(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StaleDataError("patients row was updated concurrently")
            return await real_flush(*args, **kwargs)

        with patch.object(db_session, "flush", side_effect=flaky_flush):
            await persist_merged_diagnoses(
                db_session, patient_in_db, TEST_USER_ID, [_c("Asthma", 0.4)], now=NOW
            )

        limit = (
            await db_session.execute(
                select(UserTokenLimit).where(UserTokenLimit.user_id == TEST_USER_ID)
            )
        ).scalar_one()
        assert limit.current_tokens == 42
