"""Tests for entry selection, analysis loading and analysis runs."""

import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from api.auth import AuthContext
from conftest import make_analysis, make_entry, make_report
from reporting.errors import AnalysisUnavailableError, NoEntrySelectedError, OperationInProgressError
from reporting.orchestrator import (
    AnalysisOrchestrator,
    AnalysisStatus,
    ReportsStatus,
    SelectionState,
)
from services.backend import BackendClient


@pytest.fixture
def orchestrator(backend):
    return AnalysisOrchestrator(backend)


class TestSelectEntry:
    def test_initial_state(self, orchestrator):
        assert orchestrator.state == SelectionState.IDLE
        assert orchestrator.entry is None
        with pytest.raises(NoEntrySelectedError):
            orchestrator.require_entry()

    def test_loads_reports_and_prefills_form(self, backend, orchestrator):
        entry = make_entry()
        backend.reports[1] = [make_report(1), make_report(2)]
        backend.analyses[1] = make_analysis()

        asyncio.run(orchestrator.select_entry(entry))

        assert orchestrator.state == SelectionState.ENTRY_SELECTED
        assert [r.id for r in orchestrator.reports] == [1, 2]
        assert orchestrator.reports_status == ReportsStatus.LOADED
        assert orchestrator.analysis_status == AnalysisStatus.LOADED
        assert orchestrator.form.qmax == "18.26"
        assert orchestrator.form.voided_volume == "310.40"
        assert orchestrator.form.time_to_qmax == "7.01"
        assert orchestrator.form.patient_name == "Arjun Rao"
        assert orchestrator.notices.active() == []

    def test_fetches_run_concurrently(self, backend, orchestrator):
        backend.analyses[1] = make_analysis()

        async def scenario():
            # Reports are held back until analysis has been requested
            gate = asyncio.Event()
            backend.gates[("list_reports", 1)] = gate
            task = asyncio.create_task(orchestrator.select_entry(make_entry()))
            while ("get_analysis", 1) not in backend.calls:
                await asyncio.sleep(0)
            gate.set()
            await task

        asyncio.run(scenario())
        assert orchestrator.analysis_status == AnalysisStatus.LOADED
        assert orchestrator.reports_status == ReportsStatus.LOADED

    def test_no_analysis(self, backend, orchestrator):
        asyncio.run(orchestrator.select_entry(make_entry()))
        assert orchestrator.analysis is None
        assert orchestrator.analysis_status == AnalysisStatus.ABSENT
        assert orchestrator.form.qmax == ""

    def test_report_failure_degrades_alone(self, backend, orchestrator):
        backend.failures.add("list_reports")
        backend.analyses[1] = make_analysis()

        asyncio.run(orchestrator.select_entry(make_entry()))

        assert orchestrator.reports == []
        assert orchestrator.reports_status == ReportsStatus.LOADED
        assert orchestrator.analysis_status == AnalysisStatus.LOADED
        assert orchestrator.form.qmax == "18.26"
        assert [n.level for n in orchestrator.notices.active()] == ["warning"]

    def test_analysis_failure_degrades_alone(self, backend, orchestrator):
        backend.failures.add("get_analysis")
        backend.reports[1] = [make_report(1)]

        asyncio.run(orchestrator.select_entry(make_entry()))

        assert [r.id for r in orchestrator.reports] == [1]
        assert orchestrator.analysis is None
        assert orchestrator.analysis_status == AnalysisStatus.ABSENT

    def test_unparseable_metrics_clear_prefill(self, backend, orchestrator):
        backend.analyses[1] = make_analysis(metrics="{broken")
        asyncio.run(orchestrator.select_entry(make_entry()))
        assert orchestrator.analysis_status == AnalysisStatus.LOADED
        assert orchestrator.form.qmax == ""

    def test_partial_metrics(self, backend, orchestrator):
        backend.analyses[1] = make_analysis(metrics={"Qmax": 12.345, "Voided_Volume": None})
        asyncio.run(orchestrator.select_entry(make_entry()))
        assert orchestrator.form.qmax == "12.35"
        assert orchestrator.form.voided_volume == ""

    def test_new_selection_starts_fresh_form(self, backend, orchestrator):
        asyncio.run(orchestrator.select_entry(make_entry(1)))
        orchestrator.form.age = "54"
        orchestrator.form.toggle("indications", "luts")

        asyncio.run(orchestrator.select_entry(make_entry(2, patient_name="Meera Iyer")))

        assert orchestrator.form.age == ""
        assert orchestrator.form.indications == []
        assert orchestrator.form.patient_name == ""
        assert orchestrator.composed is None

    def test_stale_analysis_never_reaches_new_form(self, backend, orchestrator):
        backend.analyses[1] = make_analysis(1, metrics={"Qmax": 30})
        backend.analyses[2] = make_analysis(2, metrics={"Qmax": 8})

        async def scenario():
            gate = asyncio.Event()
            backend.gates[("get_analysis", 1)] = gate
            first = asyncio.create_task(orchestrator.select_entry(make_entry(1)))
            await asyncio.sleep(0)
            await orchestrator.select_entry(make_entry(2, patient_name="Meera Iyer"))
            orchestrator.form.age = "61"
            gate.set()
            await first

        asyncio.run(scenario())

        assert orchestrator.entry.id == 2
        assert orchestrator.analysis.entry_id == 2
        assert orchestrator.form.qmax == "8.00"
        assert orchestrator.form.age == "61"
        assert orchestrator.form.patient_name == "Meera Iyer"

    def test_stale_reports_discarded(self, backend, orchestrator):
        backend.reports[1] = [make_report(1)]
        backend.reports[2] = [make_report(5, entry_id=2)]

        async def scenario():
            gate = asyncio.Event()
            backend.gates[("list_reports", 1)] = gate
            first = asyncio.create_task(orchestrator.select_entry(make_entry(1)))
            await asyncio.sleep(0)
            await orchestrator.select_entry(make_entry(2))
            gate.set()
            await first

        asyncio.run(scenario())
        assert [r.id for r in orchestrator.reports] == [5]


class TestAnalysisCache:
    def test_reselection_uses_cache(self, backend, orchestrator):
        backend.analyses[1] = make_analysis()
        asyncio.run(orchestrator.select_entry(make_entry(1)))
        asyncio.run(orchestrator.select_entry(make_entry(2)))
        asyncio.run(orchestrator.select_entry(make_entry(1)))

        assert backend.calls.count(("get_analysis", 1)) == 1
        assert backend.calls.count(("list_reports", 1)) == 2
        assert orchestrator.form.qmax == "18.26"

    def test_refresh_bypasses_cache(self, backend, orchestrator):
        backend.analyses[1] = make_analysis(metrics={"Qmax": 10})
        asyncio.run(orchestrator.select_entry(make_entry(1)))
        backend.analyses[1] = make_analysis(analysis_id=99, metrics={"Qmax": 11})

        asyncio.run(orchestrator.refresh_analysis())

        assert orchestrator.analysis.id == 99
        assert orchestrator.form.qmax == "11.00"

    def test_refresh_keeps_user_edited_metrics(self, backend, orchestrator):
        backend.analyses[1] = make_analysis(metrics={"Qmax": 10, "Qavg": 4})
        asyncio.run(orchestrator.select_entry(make_entry(1)))
        orchestrator.form.qmax = "12.00"
        backend.analyses[1] = make_analysis(analysis_id=99, metrics={"Qmax": 11, "Qavg": 5})

        asyncio.run(orchestrator.refresh_analysis())

        assert orchestrator.form.qmax == "12.00"
        assert orchestrator.form.qavg == "5.00"
        notice = orchestrator.notices.active()[-1]
        assert notice.level == "warning"
        assert "Maximum flow rate (Qmax)" in notice.message

    def test_refresh_not_found_clears_prefill(self, backend, orchestrator):
        backend.analyses[1] = make_analysis(metrics={"Qmax": 10, "Qavg": 4})
        asyncio.run(orchestrator.select_entry(make_entry(1)))
        orchestrator.form.qavg = "4.50"
        del backend.analyses[1]

        asyncio.run(orchestrator.refresh_analysis())

        assert orchestrator.analysis is None
        assert orchestrator.analysis_status == AnalysisStatus.ABSENT
        assert orchestrator.form.qmax == ""
        assert orchestrator.form.qavg == "4.50"

    def test_refresh_failure_keeps_previous(self, backend, orchestrator):
        backend.analyses[1] = make_analysis()
        asyncio.run(orchestrator.select_entry(make_entry(1)))
        backend.failures.add("get_analysis")

        asyncio.run(orchestrator.refresh_analysis())

        assert orchestrator.analysis is not None
        assert orchestrator.analysis_status == AnalysisStatus.LOADED


class TestRunAnalysis:
    def test_not_offered_without_video(self, orchestrator):
        asyncio.run(orchestrator.select_entry(make_entry(video=False)))
        assert orchestrator.can_run_analysis is False
        with pytest.raises(AnalysisUnavailableError):
            asyncio.run(orchestrator.run_analysis())

    def test_bottom_view_is_enough(self, orchestrator):
        entry = make_entry(video=False, bottom_view_url="https://cdn.example.org/1/bottom.mp4")
        asyncio.run(orchestrator.select_entry(entry))
        assert orchestrator.can_run_analysis is True

    def test_success_applies_result(self, backend, orchestrator):
        backend.run_results[1] = make_analysis(metrics={"Qmax": 14.5, "Qavg": 7})
        asyncio.run(orchestrator.select_entry(make_entry()))
        orchestrator.form.age = "54"

        result = asyncio.run(orchestrator.run_analysis())

        assert result.entry_id == 1
        assert orchestrator.analysis is result
        assert orchestrator.form.qmax == "14.50"
        assert orchestrator.form.qavg == "7.00"
        assert orchestrator.form.age == "54"
        assert orchestrator.notices.active()[-1].level == "success"

    def test_second_run_rejected_while_in_flight(self, backend, orchestrator):
        backend.run_results[1] = make_analysis()

        async def scenario():
            await orchestrator.select_entry(make_entry())
            gate = asyncio.Event()
            backend.gates[("run_analysis", 1)] = gate
            first = asyncio.create_task(orchestrator.run_analysis())
            await asyncio.sleep(0)
            assert orchestrator.analysis_running is True
            assert orchestrator.can_run_analysis is False
            with pytest.raises(OperationInProgressError):
                await orchestrator.run_analysis()
            gate.set()
            await first

        asyncio.run(scenario())
        assert backend.calls.count(("run_analysis", 1)) == 1
        assert orchestrator.can_run_analysis is True

    def test_failure_keeps_previous_analysis(self, backend, orchestrator):
        backend.analyses[1] = make_analysis()
        backend.failures.add("run_analysis")
        asyncio.run(orchestrator.select_entry(make_entry()))

        result = asyncio.run(orchestrator.run_analysis())

        assert result is None
        assert orchestrator.analysis.id == 10
        assert orchestrator.form.qmax == "18.26"
        assert orchestrator.notices.active()[-1].level == "error"
        assert orchestrator.can_run_analysis is True

    def test_late_run_result_not_applied_to_other_entry(self, backend, orchestrator):
        backend.run_results[1] = make_analysis(1, metrics={"Qmax": 25})

        async def scenario():
            await orchestrator.select_entry(make_entry(1))
            gate = asyncio.Event()
            backend.gates[("run_analysis", 1)] = gate
            run = asyncio.create_task(orchestrator.run_analysis())
            await asyncio.sleep(0)
            await orchestrator.select_entry(make_entry(2))
            gate.set()
            return await run

        result = asyncio.run(scenario())

        assert result.entry_id == 1
        assert orchestrator.entry.id == 2
        assert orchestrator.analysis is None
        assert orchestrator.form.qmax == ""
        # Cached for when entry 1 is selected again
        asyncio.run(orchestrator.select_entry(make_entry(1)))
        assert orchestrator.form.qmax == "25.00"


class TestSessionHelpers:
    def test_reset_form(self, orchestrator):
        asyncio.run(orchestrator.select_entry(make_entry()))
        orchestrator.form.age = "54"
        orchestrator.reset_form()
        assert orchestrator.form.age == ""
        assert orchestrator.composed is None

    def test_remove_report(self, backend, orchestrator):
        backend.reports[1] = [make_report(1), make_report(2)]
        asyncio.run(orchestrator.select_entry(make_entry()))
        orchestrator.remove_report(1)
        assert [r.id for r in orchestrator.reports] == [2]


def _json_response(body, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.content = b"" if body is None else b"{}"
    resp.json.return_value = body
    return resp


class TestMalformedBackendData:
    """A real BackendClient over a mocked requests session."""

    @pytest.fixture
    def session(self):
        return MagicMock(spec=requests.Session)

    @pytest.fixture
    def live(self, session):
        client = BackendClient(
            AuthContext(token="tok", role="doctor", user_id="7"),
            base_url="http://backend.test",
            session=session,
        )
        return AnalysisOrchestrator(client)

    @staticmethod
    def _route(responses):
        def request(method, url, **kwargs):
            for suffix, resp in responses.items():
                if url.endswith(suffix):
                    return resp
            return _json_response({"detail": "not found"}, status=404)
        return request

    def test_bad_report_item_degrades_to_empty_list(self, live, session):
        session.request.side_effect = self._route({
            "/reports/entry/1": _json_response([{"id": 1, "title": "x"}]),
            "/analysis/entry/1": _json_response({"id": 10, "entry_id": 1, "metrics": {"Qmax": 9}}),
        })

        asyncio.run(live.select_entry(make_entry()))

        assert live.reports == []
        assert live.reports_status == ReportsStatus.LOADED
        assert live.analysis_status == AnalysisStatus.LOADED
        assert live.form.qmax == "9.00"
        assert [n.level for n in live.notices.active()] == ["warning"]

    def test_bad_analysis_body_degrades(self, live, session):
        session.request.side_effect = self._route({
            "/reports/entry/1": _json_response([]),
            "/analysis/entry/1": _json_response({"entry_id": 1}),
        })

        asyncio.run(live.select_entry(make_entry()))

        assert live.analysis is None
        assert live.analysis_status == AnalysisStatus.ABSENT
        assert live.reports_status == ReportsStatus.LOADED

    def test_run_without_body_is_notice(self, live, session):
        session.request.side_effect = self._route({
            "/reports/entry/1": _json_response([]),
            "/analysis/entry/1/run": _json_response(None, status=204),
        })
        asyncio.run(live.select_entry(make_entry()))

        assert asyncio.run(live.run_analysis()) is None
        assert live.notices.active()[-1].level == "error"
        assert live.can_run_analysis is True

    def test_out_of_range_metric_selects_cleanly(self, live, session):
        session.request.side_effect = self._route({
            "/reports/entry/1": _json_response([]),
            "/analysis/entry/1": _json_response(
                {"id": 10, "entry_id": 1, "metrics": '{"Qmax": 1e30, "Qavg": 5}'},
            ),
        })

        asyncio.run(live.select_entry(make_entry()))
        asyncio.run(live.select_entry(make_entry()))

        assert live.form.qmax == ""
        assert live.form.qavg == "5.00"
