import pydantic
import pytest

from conftest import FakeProvider, dsl
from leadflow.core.errors import PersistenceError
from leadflow.core.store import MemoryLeadStore
from leadflow.jobs import search
from leadflow.models import LeadQuery, SearchJobStatus


def _places(*ids):
    return [{"place_id": place_id, "name": place_id} for place_id in ids]


def _submit_and_run(context, query):
    search_id = search.submit_search(context, query)
    job = context.search_queue.claim()
    summary = search.run_search_job(context, job.payload, job_id=job.id)
    return search_id, summary


def _events(context, search_id, status=None):
    events = context.events.events_for(search_id)
    if status:
        return [event for event in events if event["status"] == status]
    return events


def test_build_query_text():
    assert search.build_query_text(LeadQuery.model_validate(dsl())) == "dentist in Columbia, SC"
    generic = LeadQuery.model_validate(dsl(vertical="generic", city="Austin", state="TX"))
    assert search.build_query_text(generic) == "businesses in Austin, TX"
    law = LeadQuery.model_validate(dsl(vertical="law_firm"))
    assert search.build_query_text(law) == "law firm in Columbia, SC"


def test_max_pages_for():
    assert search.max_pages_for(50, 20) == 3
    assert search.max_pages_for(50, 20, cap=2) == 2
    assert search.max_pages_for(1, 20) == 1
    assert search.max_pages_for(500, 20, cap=25) == 25


def test_submit_search_records_and_enqueues(make_context):
    context = make_context()

    search_id = search.submit_search(context, dsl(target=5), metadata={"source": "test"})

    job = context.store.get_search_job(search_id)
    assert job["status"] == "queued"
    assert job["processed"] == 0
    queued = context.search_queue.claim()
    assert queued.payload["searchId"] == search_id
    assert queued.payload["metadata"] == {"source": "test"}
    assert queued.payload["dsl"]["result_size"] == {"target": 5}


@pytest.mark.parametrize(
    "payload",
    [
        {"vertical": "bakery", "geo": {"city": "Columbia", "state": "SC"}},
        {"vertical": "dentist", "geo": {"city": "Columbia", "state": "South Carolina"}},
        {"vertical": "dentist", "geo": {"city": "Columbia", "state": "SC"}, "result_size": {"target": 0}},
        {"vertical": "dentist", "geo": {"city": "Columbia", "state": "SC"}, "result_size": {"target": 501}},
        {"vertical": "dentist"},
    ],
)
def test_submit_search_rejects_invalid_dsl(make_context, payload):
    context = make_context()

    with pytest.raises(pydantic.ValidationError):
        search.submit_search(context, payload)

    assert len(context.search_queue) == 0
    assert context.store.search_jobs == {}


def test_fallback_search_generates_target_candidates(make_context):
    context = make_context()

    search_id, summary = _submit_and_run(context, dsl(target=20))

    processing = _events(context, search_id, "processing")
    assert len(processing) == 20
    assert [event["processed"] for event in processing] == list(range(1, 21))
    assert all(event["total"] == 20 for event in processing)
    assert processing[0]["leads"][0]["name"] == "dentist Business 1"
    assert processing[-1]["leads"][0]["name"] == "dentist Business 20"

    events = _events(context, search_id)
    assert events[0]["status"] == "fetching"
    assert events[-1]["type"] == "job:complete"
    assert events[-1]["status"] == "completed"
    assert events[-1]["total"] == 20

    assert len(context.enrich_queue) == 20
    assert summary["sources_queried"] == ["fallback_generator"]
    job = context.store.get_search_job(search_id)
    assert job["status"] == "completed"
    assert job["processed"] == 20
    assert job["total_found"] == 20
    assert job["summary_stats"]["total_leads"] == 20


def test_fallback_candidates_are_deterministic(make_context):
    first, second = make_context(), make_context()
    id_a, _ = _submit_and_run(first, dsl(target=4))
    id_b, _ = _submit_and_run(second, dsl(target=4))

    leads_a = [event["leads"][0] for event in _events(first, id_a, "processing")]
    leads_b = [event["leads"][0] for event in _events(second, id_b, "processing")]
    assert leads_a == leads_b
    assert leads_a[0]["formatted_address"] == "100 Main St, Columbia, SC"
    assert "website" in leads_a[0]
    assert "website" not in leads_a[2]


def test_live_search_pages_until_token_runs_out(make_context, sleeps):
    provider = FakeProvider(
        {
            None: {"results": _places("p1", "p2", "p3"), "next_page_token": "t2"},
            "t2": {"results": _places("p4", "p5")},
        }
    )
    context = make_context(provider=provider, page_token_delay=2.0)

    search_id, summary = _submit_and_run(context, dsl(target=50))

    assert [token for _, token in provider.text_calls] == [None, "t2"]
    assert provider.text_calls[0][0] == "dentist in Columbia, SC"
    assert summary["pages_fetched"] == 2
    assert summary["total_leads"] == 5
    assert summary["sources_queried"] == ["google_places"]
    assert sleeps.count(2.0) == 1
    assert len(context.enrich_queue) == 5
    payload = context.enrich_queue.claim().payload
    assert payload["placeId"] == "p1"
    assert payload["searchId"] == search_id
    assert payload["candidate"]["website"] == "https://p1.example.com"



def test_live_search_keeps_claim_fresh_after_each_page(make_context):
    provider = FakeProvider(
        {
            None: {"results": _places("p1", "p2"), "next_page_token": "t2"},
            "t2": {"results": _places("p3")},
        }
    )
    context = make_context(provider=provider)

    search_id = search.submit_search(context, dsl(target=50))
    job = context.search_queue.claim()
    search.run_search_job(context, job.payload, job_id=job.id)

    assert context.search_queue.touched == [job.id, job.id]
    assert len(context.enrich_queue) == 3

def test_live_search_never_exceeds_target(make_context):
    page_one = _places(*[f"a{i}" for i in range(20)])
    page_two = _places(*[f"b{i}" for i in range(20)])
    provider = FakeProvider(
        {
            None: {"results": page_one, "next_page_token": "t2"},
            "t2": {"results": page_two, "next_page_token": "t3"},
        }
    )
    context = make_context(provider=provider)

    search_id, summary = _submit_and_run(context, dsl(target=25))

    assert summary["total_leads"] == 25
    assert len(provider.detail_calls) == 25
    assert len(context.enrich_queue) == 25
    assert len(provider.text_calls) == 2
    assert context.store.get_search_job(search_id)["total_found"] == 25


def test_live_search_stops_on_empty_page(make_context):
    provider = FakeProvider({None: {"results": [], "next_page_token": "t2"}})
    context = make_context(provider=provider)

    search_id, summary = _submit_and_run(context, dsl(target=60))

    assert summary["total_leads"] == 0
    assert len(provider.text_calls) == 1
    assert context.store.get_search_job(search_id)["status"] == "completed"


def test_flaky_provider_is_retried(make_context, sleeps):
    provider = FakeProvider({None: {"results": _places("p1")}}, text_failures=2)
    context = make_context(provider=provider)

    search_id, summary = _submit_and_run(context, dsl(target=10))

    assert len(provider.text_calls) == 3
    assert sleeps[:2] == [1.0, 2.0]
    assert summary["total_leads"] == 1
    assert context.store.get_search_job(search_id)["status"] == "completed"


def test_failed_page_is_skipped(make_context):
    provider = FakeProvider({None: {"results": _places("p1")}}, text_failures=3)
    context = make_context(provider=provider)

    search_id, summary = _submit_and_run(context, dsl(target=40))

    # First page exhausts its retries; the loop moves on to the second page slot.
    assert len(provider.text_calls) == 4
    assert summary["pages_fetched"] == 1
    assert summary["total_leads"] == 1
    assert context.store.get_search_job(search_id)["status"] == "completed"


def test_failed_details_count_as_processed(make_context):
    provider = FakeProvider({None: {"results": _places("p1", "p2", "p3")}}, detail_failures={"p2": 3})
    context = make_context(provider=provider)

    search_id, summary = _submit_and_run(context, dsl(target=10))

    assert summary["total_leads"] == 2
    assert summary["total_processed"] == 3
    assert [job.payload["placeId"] for job in context.enrich_queue.waiting] == ["p1", "p3"]


def test_permanently_closed_business_is_skipped(make_context):
    provider = FakeProvider(
        {None: {"results": _places("p1", "p2")}},
        details={"p1": {"place_id": "p1", "name": "Gone", "business_status": "CLOSED_PERMANENTLY"}},
    )
    context = make_context(provider=provider)

    _, summary = _submit_and_run(context, dsl(target=10))

    assert summary["total_leads"] == 1
    assert [job.payload["placeId"] for job in context.enrich_queue.waiting] == ["p2"]


def test_cancelled_before_start(make_context):
    context = make_context()
    search_id = search.submit_search(context, dsl(target=5))
    assert context.store.cancel_search_job(search_id) is True

    job = context.search_queue.claim()
    summary = search.run_search_job(context, job.payload, job_id=job.id)

    assert summary["total_leads"] == 0
    assert context.store.get_search_job(search_id)["status"] == "cancelled"
    assert _events(context, search_id) == []
    assert len(context.enrich_queue) == 0



def test_cancel_is_not_overwritten_by_start(make_context):
    class CancelBeforeStartStore(MemoryLeadStore):
        def start_search_job(self, search_id):
            self.cancel_search_job(search_id)
            return super().start_search_job(search_id)

    provider = FakeProvider({None: {"results": _places("p1")}})
    context = make_context(provider=provider, store=CancelBeforeStartStore())

    search_id, summary = _submit_and_run(context, dsl(target=5))

    assert summary["total_leads"] == 0
    assert provider.text_calls == []
    assert context.store.get_search_job(search_id)["status"] == "cancelled"
    assert len(context.enrich_queue) == 0


def test_completed_job_redelivery_is_skipped(make_context):
    context = make_context()
    search_id = search.submit_search(context, dsl(target=3))
    job = context.search_queue.claim()
    search.run_search_job(context, job.payload, job_id=job.id)
    events_before = len(_events(context, search_id))
    enrich_jobs_before = len(context.enrich_queue)

    summary = search.run_search_job(context, job.payload, job_id=job.id)

    assert summary["total_leads"] == 0
    assert context.store.get_search_job(search_id)["status"] == "completed"
    assert len(_events(context, search_id)) == events_before
    assert len(context.enrich_queue) == enrich_jobs_before == 3

def test_cancelled_between_pages(make_context):
    holder = {}

    class CancellingProvider(FakeProvider):
        def place_details(self, place_id):
            holder["context"].store.cancel_search_job(holder["search_id"])
            return super().place_details(place_id)

    provider = CancellingProvider(
        {
            None: {"results": _places("p1"), "next_page_token": "t2"},
            "t2": {"results": _places("p2")},
        }
    )
    context = make_context(provider=provider)
    holder["context"] = context
    search_id = search.submit_search(context, dsl(target=40))
    holder["search_id"] = search_id

    job = context.search_queue.claim()
    summary = search.run_search_job(context, job.payload, job_id=job.id)

    assert summary["pages_fetched"] == 1
    assert summary["total_leads"] == 1
    assert len(provider.text_calls) == 1
    assert context.store.get_search_job(search_id)["status"] == "cancelled"
    assert _events(context, search_id)[-1]["status"] == "cancelled"


def test_store_failure_marks_job_failed(make_context):
    class FlakyStore(MemoryLeadStore):
        def update_search_job(self, search_id, *, status=None, **kwargs):
            if status is None:
                raise PersistenceError("database unavailable")
            super().update_search_job(search_id, status=status, **kwargs)

    provider = FakeProvider({None: {"results": _places("p1")}})
    context = make_context(provider=provider, store=FlakyStore())

    search_id = search.submit_search(context, dsl(target=5))
    job = context.search_queue.claim()
    with pytest.raises(PersistenceError):
        search.run_search_job(context, job.payload, job_id=job.id)

    record = context.store.get_search_job(search_id)
    assert record["status"] == SearchJobStatus.FAILED.value
    assert record["error_text"] == "database unavailable"
    last = _events(context, search_id)[-1]
    assert last["type"] == "job:failed"
    assert last["status"] == "failed"


def test_run_search_job_requires_search_id(make_context):
    with pytest.raises(ValueError):
        search.run_search_job(make_context(), {"dsl": dsl()})
