"""
Tests for the scheduler service against a real SQLite job store.
"""

import json
import os

import pytest

from conftest import make_definition
from scheduler.chain import job_id_for
from scheduler.config import SchedulerConfig
from scheduler.firing import get_firing_handler
from scheduler.service import SchedulerService, build_action, build_transport, is_scheduler_running
from transport import HttpSmsTransport, LogTransport


@pytest.fixture
def service_args(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return {
        'config_path': str(tmp_path / "scheduler_config.json"),
        'data_dir': str(tmp_path / "data"),
    }


def test_pending_jobs_survive_restart(service_args):
    service = SchedulerService(**service_args)
    service.open_for_edits()
    try:
        definition_id = service.repository.insert(make_definition(hour=8, anchor=service.now()))
        assert [job['id'] for job in service.get_jobs()] == [job_id_for(definition_id)]
        assert get_firing_handler() is service.handler
    finally:
        service.close()

    reopened = SchedulerService(**service_args)
    reopened.open_for_edits()
    try:
        jobs = reopened.get_jobs()
        assert [job['id'] for job in jobs] == [job_id_for(definition_id)]
        assert jobs[0]['intended_at'] is not None

        assert reopened.recover() == 1
        assert len(reopened.get_jobs()) == 1

        reopened.store.delete(definition_id)
        assert reopened.recover() == 0
        assert reopened.get_jobs() == []
    finally:
        reopened.close()


def test_invalid_config_is_rejected(service_args, tmp_path):
    with open(service_args['config_path'], 'w') as f:
        json.dump({'timezone': "Nowhere/Special"}, f)

    with pytest.raises(ValueError):
        SchedulerService(**service_args)


def test_build_transport():
    config = SchedulerConfig().transport
    assert isinstance(build_transport(config), LogTransport)

    config.kind = "http"
    config.url = "https://sms.example/send"
    assert isinstance(build_transport(config), HttpSmsTransport)


def test_pid_file_tracking(tmp_path, monkeypatch):
    pid_file = tmp_path / "scheduler.pid"
    monkeypatch.setenv("CADENCE_PID_FILE", str(pid_file))

    assert is_scheduler_running() == (False, None)

    pid_file.write_text(str(os.getpid()))
    assert is_scheduler_running() == (True, os.getpid())

    pid_file.write_text("not-a-pid")
    assert is_scheduler_running() == (False, None)


def test_build_action_uses_content_source_only_with_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config = SchedulerConfig()

    action = build_action(config)
    assert isinstance(action.transport, LogTransport)
    assert action.content_source is None

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert build_action(config).content_source is not None
