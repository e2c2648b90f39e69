"""Tests for the kubectl port-forward transport."""

import threading

import pytest

from conftest import wait_for
from k8snake.exceptions import TransportError, TunnelTimeoutError
from k8snake.tunnel import PortForwardProcess, StartupOutcome

READY_LINE = "Forwarding from 127.0.0.1:40123 -> 8080"


def make_process(**overrides) -> PortForwardProcess:
    values = {
        "namespace": "things",
        "pod_name": "things-api-0",
        "local_port": 40123,
        "remote_port": 8080,
    }
    values.update(overrides)
    return PortForwardProcess(**values)


class TestPortForwardProcess:
    """Test PortForwardProcess against a fake child process."""

    def test_command(self):
        """Test kubectl arguments, including kubeconfig and context."""
        process = make_process(kubeconfig="/tmp/kubeconfig", context="staging")

        assert process.command == [
            "kubectl",
            "--kubeconfig",
            "/tmp/kubeconfig",
            "--context",
            "staging",
            "port-forward",
            "pod/things-api-0",
            "40123:8080",
            "--namespace",
            "things",
            "--address",
            "127.0.0.1",
        ]

    def test_rejects_invalid_port(self):
        with pytest.raises(ValueError, match="Local port"):
            make_process(local_port=0)

    def test_ready_when_forwarding_line_seen(self, fake_popen):
        """Test the Forwarding from line marks the transport ready."""
        process = make_process()
        process.start()
        fake_popen[0].stdout.feed(READY_LINE)

        result = process.wait_until_ready(timeout=2)

        assert result.ready
        assert result.outcome == StartupOutcome.READY
        assert result.stdout == (READY_LINE,)
        assert result.error_output == ""
        assert process.is_running()
        assert process.pid == 4242
        process.stop()

    def test_times_out_without_readiness(self, fake_popen):
        """Test silence until the deadline raises a timeout."""
        process = make_process()
        process.start()

        with pytest.raises(TunnelTimeoutError, match="things/things-api-0"):
            process.wait_until_ready(timeout=0.1)

        process.stop()
        assert fake_popen[0].terminate_calls == 1

    def test_exit_before_ready(self, fake_popen):
        """Test stderr written right before exit is part of the result."""
        process = make_process()
        process.start()
        fake_popen[0].stderr.feed('error: pods "things-api-0" not found')
        fake_popen[0].exit(1)

        result = process.wait_until_ready(timeout=2)

        assert not result.ready
        assert result.outcome == StartupOutcome.EXITED
        assert result.error_output == 'error: pods "things-api-0" not found'

    def test_stderr_written_before_ready_line_is_captured(self, fake_popen):
        """Test stderr preceding the ready line is seen when readiness is reported."""
        for _ in range(20):
            process = make_process()
            process.start()
            child = fake_popen[-1]
            child.stderr.feed("Unable to listen on port 40123")
            child.stdout.feed(READY_LINE)

            result = process.wait_until_ready(timeout=2)

            assert result.ready
            assert result.error_output == "Unable to listen on port 40123"
            process.stop()

    def test_output_after_ready_is_not_retained(self, fake_popen):
        """Test per-connection output is logged but not kept once ready."""
        process = make_process()
        process.start()
        child = fake_popen[0]
        child.stdout.feed(READY_LINE)
        process.wait_until_ready(timeout=2)

        child.stdout.feed(*(f"Handling connection for {n}" for n in range(500)))
        child.stderr.feed("an error occurred forwarding 40123 -> 8080")
        child.exit(0)
        wait_for(lambda: not process._reader.is_alive())

        result = process.result()
        assert result.stdout == (READY_LINE,)
        assert result.stderr == ()

    def test_ready_line_split_across_writes(self, fake_popen):
        """Test a line is only handled once its newline arrives."""
        process = make_process()
        process.start()
        child = fake_popen[0]
        child.stdout.write("Forwarding from 127.0.0.1:40123")

        with pytest.raises(TunnelTimeoutError):
            process.wait_until_ready(timeout=0.2)

        child.stdout.write(" -> 8080\n")
        result = process.wait_until_ready(timeout=2)

        assert result.stdout == (READY_LINE,)
        process.stop()

    def test_spawn_failure_raises_transport_error(self, monkeypatch):
        """Test a missing kubectl binary surfaces as TransportError."""

        def _fail(*args, **kwargs):
            raise FileNotFoundError("kubectl")

        monkeypatch.setattr("k8snake.tunnel.process.subprocess.Popen", _fail)

        with pytest.raises(TransportError, match="Failed to start kubectl"):
            make_process().start()

    def test_stop_is_idempotent(self, fake_popen):
        """Test stopping twice signals the child once."""
        process = make_process()
        process.start()

        assert process.stop() is True
        assert process.stop() is True
        assert fake_popen[0].terminate_calls == 1
        assert process.stopped
        assert not process.is_running()

    def test_concurrent_stop_signals_once(self, fake_popen):
        """Test concurrent stop calls signal the child once."""
        process = make_process()
        process.start()

        threads = [threading.Thread(target=process.stop) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert fake_popen[0].terminate_calls == 1

    def test_stop_before_start(self, fake_popen):
        """Test a stopped process cannot be started."""
        process = make_process()

        assert process.stop() is True
        assert fake_popen == []
        with pytest.raises(TransportError, match="already stopped"):
            process.start()

    def test_stop_unblocks_waiters(self, fake_popen):
        process = make_process()
        process.start()
        process.stop()

        result = process.wait_until_ready(timeout=1)

        assert result.outcome == StartupOutcome.EXITED

    def test_context_manager(self, fake_popen):
        """Test context manager stops the child on exit."""
        with make_process() as process:
            assert process.is_running()

        assert fake_popen[0].terminate_calls == 1
