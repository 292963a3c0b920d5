"""
Tests for the cascade orchestrator.

End-to-end request processing against a temporary database, an in-memory
content source and a scripted inference transport:
- three-item cascade (bot, human and inconclusive entropy bands)
- idempotent claim under duplicate invocation
- degraded classification when the inference API keeps failing
- parent-context escalation and its warnings
- terminal input errors
- cancellation while a request is in progress
"""

import asyncio
import string

import httpx
import pytest


X_TEXT = "lorem ipsum lorem ipsum lorem ipsum"   # bot band
Y_TEXT = string.ascii_letters                    # human band
Z_TEXT = "abcdefghijklmnop"                      # inconclusive band
W_TEXT = string.ascii_letters + string.digits + string.punctuation  # above max_entropy


def _comment(item_id, body, parent_id=None, created_utc=0.0):
    from botcheck.models.analysis_models import ContentItem

    return ContentItem(id=item_id, body=body, parent_id=parent_id, created_utc=created_utc, kind="comment")


def _labels(ai, human):
    from botcheck.inference import InferenceResponse

    return InferenceResponse(
        success=True,
        data=[[{"label": "AI", "score": ai}, {"label": "Human", "score": human}]],
        status_code=200,
        attempts=1,
    )


def _orchestrator(store, source, client, config, max_concurrency=8):
    from botcheck.classifiers import ClassifierSuite
    from botcheck.orchestrator import CascadeOrchestrator

    return CascadeOrchestrator(
        store=store,
        sources={"reddit": source},
        classifiers=ClassifierSuite(client, config=config, max_concurrency=max_concurrency),
        config=config,
        max_concurrency=max_concurrency,
    )


def _scenario_items():
    return [
        _comment("x", X_TEXT, created_utc=3.0),
        _comment("y", Y_TEXT, created_utc=2.0),
        _comment("z", Z_TEXT, created_utc=1.0),
        _comment("short", "ok", created_utc=0.5),
    ]


class TestThreeItemCascade:
    """Bot, human and inconclusive items processed in one request."""

    @pytest.mark.asyncio
    async def test_request_completes_with_expected_result(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.orchestrator import METHOD_TAG, ProcessOutcome

        source = fake_source_factory(items=_scenario_items())
        client = fake_inference_factory()
        orchestrator = _orchestrator(store, source, client, entropy_test_config)
        request_id = store.create_request("reddit", "someone", max_items=10)

        outcome = await orchestrator.process_request(request_id)

        assert outcome == ProcessOutcome.DONE
        assert store.get_request(request_id).status == "done"

        result = store.get_result(request_id)
        assert result.method == METHOD_TAG
        assert result.total_count == 4
        assert result.analyzed_count == 3
        assert result.stage_counts == {"entropy": 2, "classified": 1, "context": 0}
        assert result.warnings == []
        assert source.fetch_calls == [("someone", 10)]

    @pytest.mark.asyncio
    async def test_entropy_stats_recorded(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        source = fake_source_factory(items=_scenario_items())
        orchestrator = _orchestrator(store, source, fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        await orchestrator.process_request(request_id)

        stats = store.get_result(request_id).entropy_stats
        assert stats["bot_count"] == 1
        assert stats["human_count"] == 1
        assert stats["inconclusive_count"] == 1
        assert stats["average_entropy"] == pytest.approx((3.2676 + 5.7004 + 4.0) / 3, abs=1e-3)
        assert stats["confidence"] == "low"

    @pytest.mark.asyncio
    async def test_zero_score_items_excluded_from_stage_counts(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        """An item above max_entropy scores 0 and carries no evidence."""
        source = fake_source_factory(items=_scenario_items() + [_comment("w", W_TEXT)])
        orchestrator = _orchestrator(store, source, fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        await orchestrator.process_request(request_id)

        result = store.get_result(request_id)
        items = {i.item_id: i for i in result.per_item}
        assert items["w"].score == 0.0
        assert result.analyzed_count == 4
        assert result.stage_counts == {"entropy": 2, "classified": 1, "context": 0}
        assert result.overall_confidence == pytest.approx((0.3 + 0.3 + 0.7) / 3)
        assert result.entropy_stats["human_count"] == 2

    @pytest.mark.asyncio
    async def test_only_inconclusive_item_is_classified(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        source = fake_source_factory(items=_scenario_items())
        client = fake_inference_factory()
        orchestrator = _orchestrator(store, source, client, entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        await orchestrator.process_request(request_id)

        assert client.classify_calls == [(Z_TEXT, "test/detector")]

    @pytest.mark.asyncio
    async def test_per_item_scores(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        source = fake_source_factory(items=_scenario_items())
        orchestrator = _orchestrator(store, source, fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        await orchestrator.process_request(request_id)

        items = {i.item_id: i for i in store.get_result(request_id).per_item}
        assert set(items) == {"x", "y", "z"}

        x, y, z = items["x"], items["y"], items["z"]
        assert x.stage == "entropy"
        assert x.entropy_band == "bot"
        assert x.score == pytest.approx(0.8186, abs=1e-3)
        assert x.signal_scores == {"entropy": pytest.approx(0.8186, abs=1e-3)}
        assert x.inconclusive is False

        assert y.stage == "entropy"
        assert y.entropy_band == "human"
        assert y.score == pytest.approx(0.0333, abs=1e-3)

        assert z.stage == "classified"
        assert z.signal_scores["bert"] == pytest.approx(0.9)
        assert z.confidence == pytest.approx(0.8)
        assert z.score == pytest.approx((0.15 * 0.3714 + 0.3 * 0.9) / 0.45, abs=1e-3)
        assert z.num_tokens == 1
        assert z.inconclusive is False

    @pytest.mark.asyncio
    async def test_user_score_and_confidence(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        source = fake_source_factory(items=_scenario_items())
        orchestrator = _orchestrator(store, source, fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        await orchestrator.process_request(request_id)

        result = store.get_result(request_id)
        items = {i.item_id: i for i in result.per_item}
        expected = (items["x"].score + items["y"].score + items["z"].score) / 3
        assert result.user_score == pytest.approx(expected)
        assert items["y"].score < result.user_score < items["x"].score
        assert result.overall_confidence == pytest.approx((0.3 + 0.3 + 0.7) / 3)
        assert set(result.signal_averages) == {"entropy", "bert"}


class TestIdempotentClaim:
    """A request is processed at most once."""

    @pytest.mark.asyncio
    async def test_duplicate_concurrent_invocation(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        source = fake_source_factory(items=_scenario_items())
        orchestrator = _orchestrator(store, source, fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        outcomes = await asyncio.gather(
            orchestrator.process_request(request_id),
            orchestrator.process_request(request_id),
        )

        assert sorted(o.value for o in outcomes) == ["done", "skipped"]
        assert store.count_results(request_id) == 1
        assert len(source.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_completed_request_is_skipped(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.orchestrator import ProcessOutcome

        source = fake_source_factory(items=_scenario_items())
        orchestrator = _orchestrator(store, source, fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        assert await orchestrator.process_request(request_id) == ProcessOutcome.DONE
        assert await orchestrator.process_request(request_id) == ProcessOutcome.SKIPPED
        assert store.count_results(request_id) == 1

    @pytest.mark.asyncio
    async def test_unknown_request_is_not_found(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.orchestrator import ProcessOutcome

        orchestrator = _orchestrator(
            store, fake_source_factory(), fake_inference_factory(), entropy_test_config
        )

        assert await orchestrator.process_request("missing") == ProcessOutcome.NOT_FOUND


class TestClassifierDegradation:
    """Inference failures degrade the result instead of failing the request."""

    @pytest.mark.asyncio
    async def test_persistent_timeouts_keep_entropy_score(
        self, store, entropy_test_config, fake_source_factory
    ):
        from botcheck.inference import HuggingFaceInferenceClient
        from botcheck.orchestrator import ProcessOutcome

        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        client = HuggingFaceInferenceClient(
            api_key="hf_test",
            base_url="https://inference.test",
            max_attempts=3,
            base_delay=0,
            transport=httpx.MockTransport(handler),
        )
        source = fake_source_factory(items=_scenario_items())
        orchestrator = _orchestrator(store, source, client, entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        outcome = await orchestrator.process_request(request_id)
        await client.aclose()

        assert outcome == ProcessOutcome.DONE
        assert len(attempts) == 3

        result = store.get_result(request_id)
        z = {i.item_id: i for i in result.per_item}["z"]
        assert z.stage == "classified"
        assert "bert" not in z.signal_scores
        assert z.confidence == 0.0
        assert z.score == pytest.approx(0.3714, abs=1e-3)
        assert z.inconclusive is True
        assert [w["type"] for w in result.warnings] == ["classifier_failed"]
        assert result.warnings[0]["context"]["item_id"] == "z"

    @pytest.mark.asyncio
    async def test_one_failing_item_does_not_affect_others(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.inference import InferenceResponse

        items = [
            _comment("z1", "abcdefghijklmnop"),
            _comment("z2", "bcdefghijklmnopq"),
        ]
        client = fake_inference_factory(
            responses={"bcdefghijklmnopq": InferenceResponse(success=False, error="HTTP 500", attempts=1)}
        )
        orchestrator = _orchestrator(store, fake_source_factory(items=items), client, entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        await orchestrator.process_request(request_id)

        per_item = {i.item_id: i for i in store.get_result(request_id).per_item}
        assert per_item["z1"].signal_scores["bert"] == pytest.approx(0.9)
        assert "bert" not in per_item["z2"].signal_scores
        assert per_item["z1"].stage == per_item["z2"].stage == "classified"


class TestParentContextStage:
    """include_parent escalation."""

    @pytest.mark.asyncio
    async def test_uncertain_item_promoted_with_parent_context(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        source = fake_source_factory(
            items=[_comment("z", Z_TEXT, parent_id="t1_p1"), _comment("x", X_TEXT, parent_id="t1_p9")],
            parents={"t1_p1": _comment("p1", "parent says something")},
        )
        client = fake_inference_factory(responses={
            "parent says": _labels(0.9, 0.1),
            Z_TEXT: _labels(0.6, 0.4),
        })
        orchestrator = _orchestrator(store, source, client, entropy_test_config)
        request_id = store.create_request("reddit", "someone", include_parent=True)

        await orchestrator.process_request(request_id)

        result = store.get_result(request_id)
        z = {i.item_id: i for i in result.per_item}["z"]
        assert z.stage == "context"
        assert z.used_parent_context is True
        assert z.has_parent is True
        assert z.confidence == pytest.approx(0.8)
        assert z.signal_scores["bert"] == pytest.approx(0.9)
        assert result.stage_counts["context"] == 1

        # the bot-band item never escalates, so its parent is never fetched
        assert source.parent_calls == ["t1_p1"]
        assert client.classify_calls[-1][0] == "parent says something\n\n" + Z_TEXT

    @pytest.mark.asyncio
    async def test_unavailable_parent_records_warning(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        source = fake_source_factory(items=[_comment("z", Z_TEXT, parent_id="t1_gone")])
        client = fake_inference_factory(default=_labels(0.6, 0.4))
        orchestrator = _orchestrator(store, source, client, entropy_test_config)
        request_id = store.create_request("reddit", "someone", include_parent=True)

        await orchestrator.process_request(request_id)

        result = store.get_result(request_id)
        z = result.per_item[0]
        assert z.stage == "classified"
        assert z.used_parent_context is False
        assert z.inconclusive is True
        assert [w["type"] for w in result.warnings] == ["context_unavailable"]

    @pytest.mark.asyncio
    async def test_failed_context_classification_keeps_classified_stage(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.inference import InferenceResponse

        source = fake_source_factory(
            items=[_comment("z", Z_TEXT, parent_id="t1_p1")],
            parents={"t1_p1": _comment("p1", "parent says something")},
        )
        client = fake_inference_factory(responses={
            "parent says": InferenceResponse(success=False, error="HTTP 503", status_code=503, attempts=3),
            Z_TEXT: _labels(0.6, 0.4),
        })
        orchestrator = _orchestrator(store, source, client, entropy_test_config)
        request_id = store.create_request("reddit", "someone", include_parent=True)

        await orchestrator.process_request(request_id)

        z = store.get_result(request_id).per_item[0]
        assert z.stage == "classified"
        assert z.used_parent_context is False
        assert z.signal_scores["bert"] == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_without_include_parent_no_lookups(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        source = fake_source_factory(
            items=[_comment("z", Z_TEXT, parent_id="t1_p1")],
            parents={"t1_p1": _comment("p1", "parent says something")},
        )
        client = fake_inference_factory(default=_labels(0.6, 0.4))
        orchestrator = _orchestrator(store, source, client, entropy_test_config)
        request_id = store.create_request("reddit", "someone", include_parent=False)

        await orchestrator.process_request(request_id)

        assert source.parent_calls == []
        assert store.get_result(request_id).per_item[0].stage == "classified"

    @pytest.mark.asyncio
    async def test_parent_lookups_are_bounded(
        self, store, entropy_test_config, fake_inference_factory
    ):
        from botcheck.models.analysis_models import ContentItem

        class SlowSource:
            platform = "reddit"

            def __init__(self, items):
                self.items = items
                self.in_flight = 0
                self.peak = 0

            async def fetch_user_items(self, user_id, limit=100, warnings=None):
                return list(self.items)

            async def fetch_parent(self, ref):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return ContentItem(id=ref[3:], body="parent text here", kind="comment")

        items = [
            _comment(f"z{i}", string.ascii_lowercase[i:i + 16], parent_id=f"t1_p{i}")
            for i in range(6)
        ]
        source = SlowSource(items)
        client = fake_inference_factory(default=_labels(0.6, 0.4))
        orchestrator = _orchestrator(store, source, client, entropy_test_config, max_concurrency=2)
        request_id = store.create_request("reddit", "someone", include_parent=True)

        await orchestrator.process_request(request_id)

        assert source.peak <= 2
        assert store.get_request(request_id).status == "done"


class TestTerminalErrors:
    """Input problems end the request in error with a message."""

    @pytest.mark.asyncio
    async def test_no_valid_items(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.orchestrator import ProcessOutcome

        source = fake_source_factory(items=[_comment("a", "ok"), _comment("b", "   short   ")])
        orchestrator = _orchestrator(store, source, fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        outcome = await orchestrator.process_request(request_id)

        assert outcome == ProcessOutcome.ERROR
        request = store.get_request(request_id)
        assert request.status == "error"
        assert request.error_message == "No valid items found for analysis"
        assert store.count_results(request_id) == 0

    @pytest.mark.asyncio
    async def test_empty_history(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.orchestrator import ProcessOutcome

        orchestrator = _orchestrator(store, fake_source_factory(items=[]), fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        assert await orchestrator.process_request(request_id) == ProcessOutcome.ERROR
        assert store.get_request(request_id).error_message == "No valid items found for analysis"

    @pytest.mark.asyncio
    async def test_unsupported_platform(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.orchestrator import ProcessOutcome

        orchestrator = _orchestrator(store, fake_source_factory(), fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("mastodon", "someone")

        assert await orchestrator.process_request(request_id) == ProcessOutcome.ERROR
        assert store.get_request(request_id).error_message == "Unsupported platform: mastodon"

    @pytest.mark.asyncio
    async def test_source_failure(
        self, store, entropy_test_config, fake_source_factory, fake_inference_factory
    ):
        from botcheck.orchestrator import ProcessOutcome
        from botcheck.reddit import ContentSourceError

        source = fake_source_factory(error=ContentSourceError("Reddit unavailable: HTTP 503"))
        orchestrator = _orchestrator(store, source, fake_inference_factory(), entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        assert await orchestrator.process_request(request_id) == ProcessOutcome.ERROR
        request = store.get_request(request_id)
        assert request.status == "error"
        assert request.error_message == "Reddit unavailable: HTTP 503"
        assert store.count_results(request_id) == 0


class _StalledClient:
    """Inference transport whose calls never complete on their own."""

    def __init__(self):
        self.started = asyncio.Event()

    async def classify(self, text, model_id):
        self.started.set()
        await asyncio.sleep(10)

    async def generate(self, text, model_id, max_new_tokens=50):
        self.started.set()
        await asyncio.sleep(10)

    async def aclose(self):
        pass


class TestCancellation:
    """A cancelled run never leaves its request stuck in progress."""

    @pytest.mark.asyncio
    async def test_cancel_mid_cascade_marks_error(self, store, entropy_test_config, fake_source_factory):
        client = _StalledClient()
        source = fake_source_factory(items=[_comment("z", Z_TEXT)])
        orchestrator = _orchestrator(store, source, client, entropy_test_config)
        request_id = store.create_request("reddit", "someone")

        task = asyncio.create_task(orchestrator.process_request(request_id))
        await asyncio.wait_for(client.started.wait(), timeout=1.0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        request = store.get_request(request_id)
        assert request.status == "error"
        assert request.error_message == "Processing cancelled"
        assert store.count_results(request_id) == 0


class TestBuildOrchestrator:

    @pytest.mark.asyncio
    async def test_wires_huggingface_backend(self, initialized_db_path, entropy_test_config):
        from botcheck.config import Settings
        from botcheck.orchestrator import CascadeOrchestrator, build_orchestrator

        settings = Settings(db_path=initialized_db_path, huggingface_api_key="hf_test")

        orchestrator = build_orchestrator(settings, entropy_test_config)

        assert isinstance(orchestrator, CascadeOrchestrator)
        assert set(orchestrator.sources) == {"reddit"}
        assert orchestrator.classifiers.generation_client is orchestrator.classifiers.label_client
        await orchestrator.aclose()

    def test_missing_huggingface_key_raises(self, initialized_db_path, entropy_test_config):
        from botcheck.config import Settings
        from botcheck.orchestrator import build_orchestrator

        with pytest.raises(ValueError, match="HUGGINGFACE_API_KEY"):
            build_orchestrator(Settings(db_path=initialized_db_path), entropy_test_config)

    @pytest.mark.asyncio
    async def test_openai_backend_uses_configured_timeout_and_retries(self, initialized_db_path, entropy_test_config):
        from unittest.mock import AsyncMock, patch

        from botcheck.ai_client import OpenAIClient
        from botcheck.config import Settings
        from botcheck.orchestrator import build_orchestrator

        settings = Settings(
            db_path=initialized_db_path,
            huggingface_api_key="hf_test",
            huggingface_timeout=12.5,
            huggingface_max_retries=4,
            generation_backend="openai",
            openai_api_key="sk-test",
        )

        with patch('openai.AsyncOpenAI') as mock_openai:
            mock_openai.return_value.close = AsyncMock()
            orchestrator = build_orchestrator(settings, entropy_test_config)

        mock_openai.assert_called_once_with(api_key="sk-test", timeout=12.5, max_retries=3)
        assert isinstance(orchestrator.classifiers.generation_client, OpenAIClient)
        await orchestrator.aclose()
        mock_openai.return_value.close.assert_awaited_once()
