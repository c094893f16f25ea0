#!/usr/bin/env python3
"""Tests for readiness probing and status queries."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import requests
from common import ResourceRef
from errors import DeadlineExceeded, ExecutionFailed, NotReady
from readiness import (
    HostPinningAdapter,
    check_pods_running,
    get_ingress_host,
    get_ingress_port,
    get_status,
    query_jsonpath,
    validate_ingress,
    wait_for_absence,
    wait_for_marker,
    wait_ready,
)
from retry import Deadline, RetryPolicy

SMCP = ResourceRef('smcp', 'basic', 'istio-system')

PENDING = "NAME    READY   STATUS            PROFILES      VERSION\nbasic   3/9     PausingInstall   [\"default\"]   2.3.0\n"
READY = "NAME    READY   STATUS            PROFILES      VERSION\nbasic   9/9     ComponentsReady   [\"default\"]   2.3.0\n"
NOT_FOUND = 'Error from server (NotFound): servicemeshcontrolplanes.maistra.io "basic" not found\n'


class TestWaitReady:
    """Test wait_ready() condition wait."""

    def test_success(self, cluster, mesh_config):
        cluster.respond('wait', (0, 'servicemeshcontrolplane.maistra.io/basic condition met\n'))
        result = wait_ready(mesh_config, SMCP, timeout=300)
        assert result.success
        assert cluster.calls[0] == [
            'oc', 'wait', '--for', 'condition=Ready', '-n', 'istio-system', 'smcp/basic', '--timeout', '300s'
        ]

    def test_timeout_is_not_ready(self, cluster, mesh_config):
        """CLI-side timeout surfaces as NotReady with output."""
        cluster.respond('wait', (1, 'error: timed out waiting for the condition on servicemeshcontrolplanes/basic'))
        with pytest.raises(NotReady) as exc_info:
            wait_ready(mesh_config, SMCP)
        assert 'timed out waiting' in exc_info.value.output

    def test_cli_missing_is_execution_failed(self, cluster, mesh_config):
        """A CLI that cannot run is ExecutionFailed, not NotReady."""
        cluster.respond('wait', (-1, ''))
        with pytest.raises(ExecutionFailed):
            wait_ready(mesh_config, SMCP)

    def test_deadline_shortens_timeout(self, cluster, mesh_config):
        wait_ready(mesh_config, SMCP, timeout=300, deadline=Deadline(100))
        timeout_arg = cluster.calls[0][cluster.calls[0].index('--timeout') + 1]
        assert int(timeout_arg.rstrip('s')) <= 100

    def test_expired_deadline(self, cluster, mesh_config):
        with pytest.raises(DeadlineExceeded):
            wait_ready(mesh_config, SMCP, deadline=Deadline(0))
        assert cluster.calls == []

    def test_sub_second_deadline_rounds_up(self, cluster, mesh_config):
        """Less than a second left still waits one second, not zero."""
        deadline = Deadline(0.4, clock=lambda: 1000.0)
        wait_ready(mesh_config, SMCP, timeout=300, deadline=deadline)
        timeout_arg = cluster.calls[0][cluster.calls[0].index('--timeout') + 1]
        assert timeout_arg == '1s'


class TestGetStatus:
    def test_wide_output(self, cluster, mesh_config):
        cluster.respond('get', (0, READY))
        result = get_status(mesh_config, SMCP)
        assert result.output == READY
        assert cluster.calls[0] == ['oc', 'get', '-n', 'istio-system', 'smcp/basic', '-o', 'wide']

    def test_kubeconfig_passed(self, cluster):
        from config import MeshConfig
        get_status(MeshConfig(kubeconfig='/kc'), SMCP)
        assert cluster.calls[0][-1] == '--kubeconfig=/kc'


class TestWaitForMarker:
    """Test wait_for_marker() polling."""

    def test_marker_appears_after_two_polls(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, PENDING), (0, PENDING), (0, READY))
        status = wait_for_marker(mesh_config, SMCP, 'ComponentsReady', timeout=300, interval=10, sleep=no_sleep)
        assert 'ComponentsReady' in status
        assert len(cluster.calls) == 3
        assert no_sleep.calls == [10, 10]

    def test_never_ready(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, PENDING))
        with pytest.raises(NotReady) as exc_info:
            wait_for_marker(mesh_config, SMCP, 'ComponentsReady', timeout=30, interval=10, sleep=no_sleep)
        assert len(cluster.calls) == 3
        assert 'PausingInstall' in exc_info.value.output

    def test_get_failure_keeps_polling(self, cluster, mesh_config, no_sleep):
        """A failing get (e.g., resource not created yet) is retried."""
        cluster.respond('get', (1, NOT_FOUND), (0, READY))
        wait_for_marker(mesh_config, SMCP, timeout=20, interval=10, sleep=no_sleep)
        assert len(cluster.calls) == 2

    def test_cli_missing_fails_fast(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (-1, ''))
        with pytest.raises(ExecutionFailed):
            wait_for_marker(mesh_config, SMCP, timeout=300, interval=10, sleep=no_sleep)
        assert len(cluster.calls) == 1


class TestWaitForAbsence:
    def test_gone_after_poll(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, READY), (1, NOT_FOUND))
        output = wait_for_absence(mesh_config, SMCP, timeout=40, interval=10, sleep=no_sleep)
        assert 'NotFound' in output
        assert no_sleep.calls == [10]

    def test_still_present(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, READY))
        with pytest.raises(NotReady, match='not removed'):
            wait_for_absence(mesh_config, SMCP, timeout=20, interval=10, sleep=no_sleep)

    def test_other_get_error_is_not_absence(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (1, 'error: You must be logged in to the server (Unauthorized)'))
        with pytest.raises(NotReady):
            wait_for_absence(mesh_config, SMCP, timeout=10, interval=10, sleep=no_sleep)


class TestQueryJsonpath:
    """Test jsonpath queries and ingress helpers."""

    def test_strips_quotes(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, "'istio-ingressgateway-istio-system.apps.example.com'"))
        host = query_jsonpath(mesh_config, 'routes', '{.items[0].spec.host}', sleep=no_sleep)
        assert host == 'istio-ingressgateway-istio-system.apps.example.com'

    def test_retries_transient_failure(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (1, 'connection refused'), (0, 'value'))
        assert query_jsonpath(mesh_config, 'routes', '{.x}', sleep=no_sleep) == 'value'
        assert no_sleep.calls == [5]

    def test_gives_up(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (1, 'connection refused'))
        with pytest.raises(ExecutionFailed, match='kept failing'):
            query_jsonpath(mesh_config, 'routes', '{.x}', policy=RetryPolicy(max_attempts=2, delay=1),
                           sleep=no_sleep)
        assert len(cluster.calls) == 2

    def test_cli_missing_not_retried(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (-1, ''))
        with pytest.raises(ExecutionFailed):
            query_jsonpath(mesh_config, 'routes', '{.x}', sleep=no_sleep)
        assert len(cluster.calls) == 1

    def test_ingress_host_query(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, 'gw.example.com'))
        assert get_ingress_host(mesh_config, sleep=no_sleep) == 'gw.example.com'
        cmd = cluster.calls[0]
        assert cmd[:3] == ['oc', 'get', 'routes']
        assert ['-n', 'istio-system'] == cmd[3:5]
        assert ['-l', 'app=istio-ingressgateway'] == cmd[5:7]

    def test_ingress_port(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, '443'))
        assert get_ingress_port(mesh_config, sleep=no_sleep) == '443'
        assert 'jsonpath={.spec.ports[?(@.name=="https")].port}' in cluster.calls[0]

    def test_ingress_port_not_numeric(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, ''))
        with pytest.raises(ExecutionFailed, match='https port'):
            get_ingress_port(mesh_config, sleep=no_sleep)


class TestCheckPodsRunning:
    def test_waits_until_running(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, ''), (0, 'Pending Running'), (0, 'Running Running'))
        phases = check_pods_running(mesh_config, 'openshift-operators', 'name=istio-operator',
                                    timeout=60, interval=5, sleep=no_sleep)
        assert phases == ['Running', 'Running']
        assert no_sleep.calls == [5, 5]

    def test_times_out(self, cluster, mesh_config, no_sleep):
        cluster.respond('get', (0, 'Pending'))
        with pytest.raises(NotReady, match='not running'):
            check_pods_running(mesh_config, 'bookinfo', 'app=ratings', timeout=10, interval=5, sleep=no_sleep)


@pytest.fixture
def session():
    """The requests session validate_ingress opens."""
    with patch('readiness.requests.Session') as mock_session_cls:
        yield mock_session_cls.return_value.__enter__.return_value


class TestValidateIngress:
    """Test validate_ingress() HTTP check."""

    def test_ok(self, session):
        session.get.return_value.status_code = 200
        success, message = validate_ingress('https://gw.example.com/productpage')
        assert success is True
        assert '200' in message
        assert session.get.call_args.kwargs['verify'] is False
        session.mount.assert_not_called()

    def test_host_header_and_ca(self, session):
        session.get.return_value.status_code = 200
        validate_ingress('https://10.0.0.1:443/', host='bookinfo.example.com', ca_file='/ca.pem')
        assert session.get.call_args.kwargs['headers'] == {'Host': 'bookinfo.example.com'}
        assert session.get.call_args.kwargs['verify'] == '/ca.pem'

    def test_ingress_address_keeps_virtual_host_for_tls(self, session):
        """The connection goes to the ingress address; Host and SNI stay on the URL host."""
        session.get.return_value.status_code = 200
        success, _ = validate_ingress('https://bookinfo.example.com:8443/productpage',
                                      ca_file='/ca.pem', ingress_address='10.0.0.1')
        assert success is True
        assert session.get.call_args.args[0] == 'https://10.0.0.1:8443/productpage'
        assert session.get.call_args.kwargs['headers'] == {'Host': 'bookinfo.example.com'}
        prefix, adapter = session.mount.call_args.args
        assert prefix == 'https://'
        assert isinstance(adapter, HostPinningAdapter)
        assert adapter.server_hostname == 'bookinfo.example.com'

    def test_unexpected_status(self, session):
        session.get.return_value.status_code = 503
        session.get.return_value.text = 'no healthy upstream'
        success, message = validate_ingress('https://gw.example.com/')
        assert success is False
        assert 'no healthy upstream' in message

    def test_connection_error(self, session):
        session.get.side_effect = requests.exceptions.ConnectionError('refused')
        success, message = validate_ingress('https://gw.example.com/')
        assert success is False
        assert 'Cannot connect' in message

    def test_timeout(self, session):
        session.get.side_effect = requests.exceptions.Timeout()
        success, message = validate_ingress('https://gw.example.com/')
        assert success is False
        assert 'Timeout' in message


class TestHostPinningAdapter:
    def test_pool_uses_pinned_hostname(self):
        adapter = HostPinningAdapter('bookinfo.example.com')
        pool_kw = adapter.poolmanager.connection_pool_kw
        assert pool_kw['server_hostname'] == 'bookinfo.example.com'
        assert pool_kw['assert_hostname'] == 'bookinfo.example.com'
