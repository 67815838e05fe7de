"""
Tests for the crawl orchestrator.

Uses the in-memory review store and canned review pages from conftest;
the checkpoint is real and lives in tmp_path.

Covers:
- Resume: processed subjects skipped, in-progress subject restarts at its page
- Termination: 404, empty page, item target, last page, run budget
- Failure isolation: item errors, subject errors, analysis errors
- Interruption: stop flag and KeyboardInterrupt flush the checkpoint

Usage:
    pytest tests/test_crawl_pipeline.py -v
"""

import json
from unittest.mock import Mock, patch

import pytest

from reception.data.config import Settings
from reception.data.data_models import CrawlConfig, RawReview, ReviewPage, Subject
from reception.data.rate_limiter import RequestInterrupted
from reception.data.review_client import ReviewSourceClient, SourceHTTPError
from reception.data.review_store import DatabaseError
from reception.orchestrator.checkpoint import CheckpointStore, CheckpointWriteError
from reception.orchestrator.crawl_pipeline import CrawlOrchestrator, CrawlStatus
from tests.conftest import FakeReviewSource, InMemoryReviewStore, make_page, make_item


SUBJECTS = [
    Subject(1, "Alpha", members=50000),
    Subject(2, "Beta", members=40000),
    Subject(3, "Gamma", members=30000),
    Subject(4, "Delta", members=20000),
]


def make_config(**overrides) -> CrawlConfig:
    params = {"items_per_subject": 50, "request_delay": 1.5, "subject_delay": 3.0}
    params.update(overrides)
    return CrawlConfig(**params)


def make_orchestrator(tmp_path, pages, subjects=None, store=None, aggregator=None):
    store = store or InMemoryReviewStore(SUBJECTS if subjects is None else subjects)
    source = FakeReviewSource(pages)
    checkpoint = CheckpointStore(tmp_path, entity="review")
    sleeps = []
    orchestrator = CrawlOrchestrator(
        source,
        store,
        checkpoint,
        aggregator=aggregator,
        sleep=sleeps.append,
    )
    return orchestrator, source, store, sleeps


def make_stored_review(subject_id: int, reviewer: str) -> RawReview:
    return RawReview(
        subject_id=subject_id,
        reviewer=reviewer,
        score=7,
        text="Solid and enjoyable.",
        text_length=20,
        sentiment_score=0.5,
        sentiment_label="positive",
    )


class TestResume:
    """Checkpointed progress is honoured on the next run."""

    def test_processed_skipped_and_current_resumed_at_page(self, tmp_path):
        checkpoint = CheckpointStore(tmp_path, entity="review")
        checkpoint.complete_subject(1)
        checkpoint.complete_subject(2)
        checkpoint.start_subject(3, "Gamma")
        checkpoint.complete_page(1)
        checkpoint.complete_page(2)

        orchestrator, source, store, _ = make_orchestrator(tmp_path, {
            3: [None, None, make_page(3, 3, ["c1", "c2"]), make_page(3, 4, ["c3"], has_next_page=False)],
            4: [make_page(4, 1, ["d1"], has_next_page=False)],
        })

        result = orchestrator.run(make_config())

        assert source.pages_requested(1) == []
        assert source.pages_requested(2) == []
        assert source.pages_requested(3) == [3, 4]
        assert source.calls[0][0] == 3
        assert store.select_calls[0]["exclude_ids"] == {1, 2, 3}
        assert result.items_ingested == 4
        assert orchestrator.checkpoint.progress.processed_subject_ids == {1, 2, 3, 4}

    def test_resumed_items_count_toward_target(self, tmp_path):
        checkpoint = CheckpointStore(tmp_path, entity="review", save_interval=1)
        checkpoint.start_subject(1, "Alpha")
        for _ in range(2):
            checkpoint.record_item()
        checkpoint.complete_page(1)

        orchestrator, source, _, _ = make_orchestrator(tmp_path, {
            1: [None, make_page(1, 2, ["a3", "a4", "a5"])],
        }, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config(items_per_subject=3))

        assert result.items_ingested == 1
        assert orchestrator.checkpoint.is_processed(1)

    def test_checkpoint_persisted_between_orchestrators(self, tmp_path):
        orchestrator, _, store, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1"], has_next_page=False)],
        }, subjects=[SUBJECTS[0]])
        orchestrator.run(make_config())

        second, source, _, _ = make_orchestrator(tmp_path, {}, store=store)
        result = second.run(make_config())

        assert source.calls == []
        assert result.subjects_targeted == 0

    def test_single_subject_crawl_keeps_interrupted_cursor(self, tmp_path):
        checkpoint = CheckpointStore(tmp_path, entity="review")
        checkpoint.configure(make_config(max_subjects=25))
        checkpoint.start_subject(3, "Gamma")
        checkpoint.record_item()
        checkpoint.complete_page(1)
        checkpoint.complete_page(2)

        orchestrator, source, _, _ = make_orchestrator(tmp_path, {
            3: [None, None, make_page(3, 3, ["c1"], has_next_page=False)],
            9: [make_page(9, 1, ["z1"], has_next_page=False)],
        }, subjects=[SUBJECTS[2], Subject(9, "Iota")])

        outcome = orchestrator.crawl_subject(9, make_config(max_subjects=1))

        assert outcome.status == "completed"
        current = orchestrator.checkpoint.current_subject
        assert current.subject_id == 3
        assert current.items_processed == 1
        assert orchestrator.checkpoint.resume_page_for(3) == 3
        assert orchestrator.checkpoint.progress.config.max_subjects == 25
        on_disk = json.loads(orchestrator.checkpoint.path.read_text())
        assert on_disk["current_subject"]["subject_id"] == 3
        assert on_disk["current_subject"]["page"] == 3

        orchestrator.run(make_config())

        assert source.pages_requested(3) == [3]
        assert orchestrator.checkpoint.is_processed(3)


class TestTermination:
    """When a subject's pagination stops."""

    def test_404_on_first_page_completes_subject(self, tmp_path):
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {1: []}, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config())

        assert source.pages_requested(1) == [1]
        assert orchestrator.checkpoint.is_processed(1)
        assert orchestrator.checkpoint.progress.errors == []
        assert result.status == CrawlStatus.COMPLETED
        assert result.subjects_failed == 0

    def test_404_mid_pagination_stops_without_error(self, tmp_path):
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1", "a2"], has_next_page=True)],
        }, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config())

        assert source.pages_requested(1) == [1, 2]
        assert result.items_ingested == 2
        assert orchestrator.checkpoint.progress.errors == []
        assert orchestrator.checkpoint.is_processed(1)

    def test_empty_page_stops(self, tmp_path):
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1"]), ReviewPage(1, 2, has_next_page=True), make_page(1, 3, ["a9"])],
        }, subjects=[SUBJECTS[0]])

        orchestrator.run(make_config())

        assert source.pages_requested(1) == [1, 2]

    def test_item_target_reached_mid_page(self, tmp_path):
        orchestrator, source, store, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1", "a2", "a3", "a4", "a5"]), make_page(1, 2, ["a6"])],
        }, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config(items_per_subject=3))

        assert source.pages_requested(1) == [1]
        assert result.items_ingested == 3
        assert store.count_reviews(1) == 3
        assert orchestrator.checkpoint.is_processed(1)

    def test_request_delay_only_between_pages(self, tmp_path):
        orchestrator, source, _, sleeps = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1", "a2"]), make_page(1, 2, ["a3"], has_next_page=False)],
        }, subjects=[SUBJECTS[0]])

        orchestrator.run(make_config(request_delay=1.5))

        assert sleeps == [1.5]

    def test_subject_delay_between_subjects(self, tmp_path):
        orchestrator, _, _, sleeps = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1"], has_next_page=False)],
            2: [make_page(2, 1, ["b1"], has_next_page=False)],
        }, subjects=SUBJECTS[:2])

        orchestrator.run(make_config(subject_delay=3.0))

        assert sleeps == [3.0]

    def test_include_preliminary_passed_to_source(self, tmp_path):
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {1: []}, subjects=[SUBJECTS[0]])

        orchestrator.run(make_config(include_preliminary=False))

        assert source.calls == [(1, 1, False)]

    def test_max_subjects(self, tmp_path):
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {})

        result = orchestrator.run(make_config(max_subjects=2))

        assert result.subjects_targeted == 2
        assert {sid for sid, _, _ in source.calls} == {1, 2}


class TestRunBudget:

    def test_global_cap_stops_mid_page_and_keeps_cursor(self, tmp_path):
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1", "a2", "a3"], has_next_page=False)],
            2: [make_page(2, 1, ["b1", "b2", "b3"], has_next_page=True)],
            3: [make_page(3, 1, ["c1"], has_next_page=False)],
        }, subjects=SUBJECTS[:3])

        result = orchestrator.run(make_config(max_total_items=4))

        assert result.items_ingested == 4
        assert source.pages_requested(3) == []
        checkpoint = orchestrator.checkpoint
        assert checkpoint.is_processed(1)
        assert not checkpoint.is_processed(2)
        assert checkpoint.current_subject.subject_id == 2
        assert checkpoint.current_subject.page == 1
        assert checkpoint.current_subject.items_processed == 1
        assert result.status == CrawlStatus.COMPLETED


class TestIdempotence:

    def test_existing_reviewers_skipped(self, tmp_path):
        store = InMemoryReviewStore([SUBJECTS[0]])
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["alice", "bob"], has_next_page=False)],
        }, store=store)
        orchestrator.crawl_subject(1, make_config())

        checkpoint_store = CheckpointStore(tmp_path / "second", entity="review")
        rerun = CrawlOrchestrator(
            FakeReviewSource({1: [make_page(1, 1, ["alice", "bob", "carol"], has_next_page=False)]}),
            store,
            checkpoint_store,
            sleep=lambda s: None,
        )
        outcome = rerun.crawl_subject(1, make_config())

        assert outcome.items_ingested == 1
        assert outcome.duplicates_skipped == 2
        assert store.count_reviews(1) == 3

    def test_top_up_counts_existing_reviews(self, tmp_path):
        store = InMemoryReviewStore([SUBJECTS[0]])
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1", "a2"], has_next_page=False)],
        }, store=store)
        orchestrator.crawl_subject(1, make_config())

        rerun = CrawlOrchestrator(
            FakeReviewSource({1: [make_page(1, 1, ["a1", "a2", "a3", "a4", "a5"])]}),
            store,
            CheckpointStore(tmp_path / "second", entity="review"),
            sleep=lambda s: None,
        )
        outcome = rerun.crawl_subject(1, make_config(items_per_subject=3, top_up_existing=True))

        assert outcome.items_ingested == 1
        assert store.count_reviews(1) == 3

    def test_top_up_resume_counts_partial_pass_once(self, tmp_path):
        store = InMemoryReviewStore([SUBJECTS[0]])
        # Two reviews from an earlier crawl, two from the interrupted pass
        for reviewer in ("old1", "old2", "p1", "p2"):
            store.upsert_review(make_stored_review(1, reviewer))
        checkpoint = CheckpointStore(tmp_path, entity="review")
        checkpoint.start_subject(1, "Alpha")
        checkpoint.record_item()
        checkpoint.record_item()
        checkpoint.complete_page(1)

        orchestrator, source, _, _ = make_orchestrator(tmp_path, {
            1: [None, make_page(1, 2, ["p3", "p4", "p5"], has_next_page=False)],
        }, store=store)

        result = orchestrator.run(make_config(items_per_subject=6, top_up_existing=True))

        assert source.pages_requested(1) == [2]
        assert result.items_ingested == 2
        assert store.count_reviews(1) == 6
        assert orchestrator.checkpoint.is_processed(1)

    def test_top_up_already_satisfied_skips_fetch(self, tmp_path):
        store = InMemoryReviewStore([SUBJECTS[0]])
        for reviewer in ("a1", "a2", "a3"):
            store.reviews[(1, reviewer)] = Mock()
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {}, store=store)

        outcome = orchestrator.crawl_subject(1, make_config(items_per_subject=3, top_up_existing=True))

        assert outcome.status == "completed"
        assert source.calls == []
        assert orchestrator.checkpoint.is_processed(1)


class TestFailureIsolation:

    def test_subject_error_logged_and_run_continues(self, tmp_path):
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [SourceHTTPError("HTTP 500: boom", status_code=500)],
            2: [make_page(2, 1, ["b1"], has_next_page=False)],
        }, subjects=SUBJECTS[:2])

        result = orchestrator.run(make_config())

        checkpoint = orchestrator.checkpoint
        assert not checkpoint.is_processed(1)
        assert checkpoint.is_processed(2)
        assert checkpoint.current_subject is None
        errors = checkpoint.progress.errors
        assert len(errors) == 1
        assert errors[0].kind == "api_error"
        assert errors[0].subject_id == 1
        assert errors[0].page == 1
        assert result.status == CrawlStatus.PARTIAL_FAILURE
        assert result.subjects_failed == 1

    def test_all_subjects_failing_is_failed(self, tmp_path):
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [SourceHTTPError("HTTP 500", status_code=500)],
        }, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config())

        assert result.status == CrawlStatus.FAILED

    def test_failed_subject_retried_on_next_run(self, tmp_path):
        orchestrator, source, store, _ = make_orchestrator(tmp_path, {
            1: [SourceHTTPError("HTTP 503", status_code=503)],
        }, subjects=[SUBJECTS[0]])
        orchestrator.run(make_config())

        source.pages[1] = [make_page(1, 1, ["a1"], has_next_page=False)]
        result = orchestrator.run(make_config())

        assert result.items_ingested == 1
        assert orchestrator.checkpoint.is_processed(1)

    def test_item_error_skips_item(self, tmp_path):
        store = InMemoryReviewStore([SUBJECTS[0]])
        original_upsert = store.upsert_review

        def upsert(review):
            if review.reviewer == "bad":
                raise DatabaseError("value too long")
            return original_upsert(review)

        store.upsert_review = upsert
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1", "bad", "a2"], has_next_page=False)],
        }, store=store)

        result = orchestrator.run(make_config())

        assert result.items_ingested == 2
        assert result.item_errors == 1
        errors = orchestrator.checkpoint.progress.errors
        assert [e.kind for e in errors] == ["item_error"]
        assert orchestrator.checkpoint.is_processed(1)

    def test_malformed_entries_logged_as_item_errors(self, tmp_path):
        page = make_page(1, 1, ["a1"], has_next_page=False)
        page.malformed.append({"review": "no user"})
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {1: [page]}, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config())

        assert result.items_ingested == 1
        assert result.item_errors == 1

    def test_non_string_review_text_is_item_error(self, tmp_path):
        page = ReviewSourceClient(Mock()).parse_page(1, 1, {
            "data": [
                {"user": {"username": "x"}, "review": ["a"] * 12},
                {"user": {"username": "y"}, "review": "A great and very engaging story."},
            ],
            "pagination": {"has_next_page": False},
        })
        orchestrator, _, store, _ = make_orchestrator(tmp_path, {1: [page]}, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config())

        assert result.status == CrawlStatus.COMPLETED
        assert result.items_ingested == 1
        assert result.item_errors == 1
        assert list(store.reviews) == [(1, "y")]
        assert [e.kind for e in orchestrator.checkpoint.progress.errors] == ["item_error"]

    def test_checkpoint_write_failure_aborts_run(self, tmp_path):
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1"]), make_page(1, 2, ["a2"], has_next_page=False)],
        }, subjects=[SUBJECTS[0]])
        failure = CheckpointWriteError(orchestrator.checkpoint.path, OSError("disk full"))

        with patch.object(orchestrator.checkpoint, "complete_page", side_effect=failure):
            with pytest.raises(CheckpointWriteError):
                orchestrator.run(make_config())


class TestReceptionUpdate:

    def test_profile_recomputed_after_subject(self, tmp_path):
        orchestrator, _, store, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1", "a2"], has_next_page=False)],
        }, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config())

        assert store.profiles[1]["review_count"] == 2
        assert result.subjects_analyzed == 1

    def test_reviews_stored_with_sentiment(self, tmp_path):
        orchestrator, _, store, _ = make_orchestrator(tmp_path, {
            1: [ReviewPage(1, 1, items=[make_item("a1", text="Absolutely terrible and boring.")])],
        }, subjects=[SUBJECTS[0]])

        orchestrator.run(make_config())

        review = store.reviews[(1, "a1")]
        assert review.sentiment_label == "negative"
        assert review.sentiment_score < 0

    def test_no_recompute_without_reviews(self, tmp_path):
        aggregator = Mock()
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {1: []}, subjects=[SUBJECTS[0]], aggregator=aggregator)

        orchestrator.run(make_config())

        aggregator.recompute.assert_not_called()

    def test_analysis_failure_does_not_block_completion(self, tmp_path):
        aggregator = Mock()
        aggregator.recompute.side_effect = RuntimeError("analysis failed")
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1"], has_next_page=False)],
        }, subjects=[SUBJECTS[0]], aggregator=aggregator)

        result = orchestrator.run(make_config())

        assert orchestrator.checkpoint.is_processed(1)
        assert [e.kind for e in orchestrator.checkpoint.progress.errors] == ["analysis_error"]
        assert result.status == CrawlStatus.COMPLETED
        assert result.subjects_analyzed == 0


class TestInterruption:

    def test_stop_between_pages_keeps_cursor(self, tmp_path):
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1"]), make_page(1, 2, ["a2"], has_next_page=False)],
        }, subjects=[SUBJECTS[0]])
        orchestrator._sleep = lambda seconds: orchestrator.request_stop()

        result = orchestrator.run(make_config())

        assert result.status == CrawlStatus.INTERRUPTED
        assert source.pages_requested(1) == [1]
        on_disk = json.loads(orchestrator.checkpoint.path.read_text())
        assert on_disk["current_subject"]["subject_id"] == 1
        assert on_disk["current_subject"]["page"] == 2
        assert on_disk["totals"]["items_ingested"] == 1

    def test_keyboard_interrupt_flushes_checkpoint(self, tmp_path):
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1"]), KeyboardInterrupt()],
        }, subjects=[SUBJECTS[0]])

        result = orchestrator.run(make_config())

        assert result.status == CrawlStatus.INTERRUPTED
        on_disk = json.loads(orchestrator.checkpoint.path.read_text())
        assert on_disk["current_subject"]["page"] == 2
        assert on_disk["totals"]["items_ingested"] == 1
        assert on_disk["processed_subject_ids"] == []

    def test_interrupted_wait_keeps_cursor(self, tmp_path):
        orchestrator, source, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1"]), RequestInterrupted("Rate limiter wait of 40.0s interrupted")],
            2: [make_page(2, 1, ["b1"], has_next_page=False)],
        }, subjects=SUBJECTS[:2])

        result = orchestrator.run(make_config())

        assert result.status == CrawlStatus.INTERRUPTED
        assert source.pages_requested(2) == []
        on_disk = json.loads(orchestrator.checkpoint.path.read_text())
        assert on_disk["current_subject"]["page"] == 2
        assert on_disk["errors"] == []


class TestCrawlResult:

    def test_summary(self, tmp_path):
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {
            1: [make_page(1, 1, ["a1", "a2"], has_next_page=False)],
        }, subjects=[SUBJECTS[0]])

        summary = orchestrator.run(make_config()).get_summary()

        assert summary["status"] == "completed"
        assert summary["items_ingested"] == 2
        assert summary["subjects_completed"] == 1
        assert summary["duration_seconds"] is not None

    def test_unknown_subject_gets_placeholder_title(self, tmp_path):
        orchestrator, _, _, _ = make_orchestrator(tmp_path, {5: []}, subjects=[])

        outcome = orchestrator.crawl_subject(5, make_config())

        assert outcome.title == "Subject 5"
        assert outcome.status == "completed"


class TestFromSettings:

    @patch.dict("os.environ", {"DATABASE_PASSWORD": "test_password"})
    def test_wires_collaborators(self, tmp_path):
        with patch.dict("os.environ", {"CHECKPOINT_DIR": str(tmp_path), "SOURCE_MAX_PER_SECOND": "2"}):
            settings = Settings()

        orchestrator = CrawlOrchestrator.from_settings(settings)

        assert orchestrator.checkpoint.directory == tmp_path
        assert orchestrator.source.fetcher.limiter.max_per_second == 2
        assert orchestrator.source.review_url(1).endswith("/anime/1/reviews")

    @patch.dict("os.environ", {"DATABASE_PASSWORD": "test_password"})
    def test_stop_cuts_limiter_wait_short(self, tmp_path):
        with patch.dict("os.environ", {"CHECKPOINT_DIR": str(tmp_path), "SOURCE_MAX_PER_SECOND": "1"}):
            settings = Settings()
        orchestrator = CrawlOrchestrator.from_settings(settings)
        limiter = orchestrator.source.fetcher.limiter
        limiter.admit()

        orchestrator.request_stop()

        with pytest.raises(RequestInterrupted):
            limiter.admit()
        assert orchestrator.source.fetcher._sleep == limiter._sleep
