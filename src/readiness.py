"""Readiness probing and read-only status queries.

Two readiness idioms:
- wait_ready: block in the CLI's own `wait --for condition=...` with a hard timeout
- wait_for_marker: poll `get -o wide` until the status text contains a marker
  such as ComponentsReady

Both raise NotReady when the timeout elapses and ExecutionFailed when the CLI
could not be run at all.
"""

import logging
import math
import re
import time
from typing import Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import requests
import urllib3
from requests.adapters import HTTPAdapter

from common import Invocation, InvocationResult, ResourceRef, execute
from config import MeshConfig
from errors import DeadlineExceeded, ExecutionFailed, NotReady, RetryExhausted
from retry import Deadline, RetryPolicy, with_retry

# Suppress SSL warnings for self-signed ingress certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

PORT_PATTERN = re.compile(r'^[0-9]{1,5}$')


def _not_started(result: InvocationResult) -> ExecutionFailed:
    return ExecutionFailed(f"Could not run: {result.command}\nerror: {result.error}",
                           output=result.output, returncode=result.returncode)


def _bounded(timeout: float, deadline: Optional[Deadline]) -> float:
    if deadline is None:
        return timeout
    if deadline.expired():
        raise DeadlineExceeded("Deadline exceeded before readiness wait started")
    return min(timeout, deadline.remaining())


def wait_ready(config: MeshConfig, ref: ResourceRef, condition: str = 'Ready',
               timeout: float = 300, deadline: Optional[Deadline] = None) -> InvocationResult:
    """Block until the resource reports the condition, via `<cli> wait`."""
    # Round up: a sub-second remainder must not become --timeout 0s
    seconds = math.ceil(_bounded(timeout, deadline))
    cmd = [config.cli, 'wait', '--for', f'condition={condition}']
    if ref.namespace:
        cmd += ['-n', ref.namespace]
    cmd += [ref.target, '--timeout', f'{seconds}s']
    cmd += config.kubeconfig_args()

    logger.info(f"Waiting up to {seconds}s for {ref} condition={condition}")
    # Hard cap in case the CLI itself hangs past its own timeout
    result = execute(Invocation(cmd, timeout=seconds + 30))
    if not result.started:
        raise _not_started(result)
    if not result.success:
        raise NotReady(f"{ref} did not report condition {condition} within {seconds}s",
                       output=result.output)
    return result


def get_status(config: MeshConfig, ref: ResourceRef, output: str = 'wide') -> InvocationResult:
    """Run `<cli> get [-n <ns>] <kind>/<name> -o <output>`."""
    cmd = [config.cli, 'get']
    if ref.namespace:
        cmd += ['-n', ref.namespace]
    cmd += [ref.target, '-o', output] + config.kubeconfig_args()
    return execute(Invocation(cmd))


def wait_for_marker(config: MeshConfig, ref: ResourceRef, marker: str = 'ComponentsReady',
                    timeout: float = 300, interval: float = 10,
                    deadline: Optional[Deadline] = None,
                    sleep: Callable[[float], None] = time.sleep) -> str:
    """Poll the resource status until it contains marker; return the status text."""

    def poll() -> str:
        result = get_status(config, ref)
        if not result.started:
            raise _not_started(result)
        if result.success and marker in result.output:
            return result.output
        raise NotReady(f"{ref} has not reported {marker} yet", output=result.output)

    policy = RetryPolicy.for_timeout(timeout, interval, retryable=lambda e: isinstance(e, NotReady))
    logger.info(f"Polling {ref} for {marker} (every {interval}s, up to {timeout}s)")
    try:
        status = with_retry(poll, policy, deadline=deadline, sleep=sleep)
    except RetryExhausted as e:
        raise NotReady(f"{ref} did not report {marker} within {timeout}s", output=e.output) from e
    logger.info(f"{ref} reports {marker}")
    return status


def wait_for_absence(config: MeshConfig, ref: ResourceRef, timeout: float = 60,
                     interval: float = 10, deadline: Optional[Deadline] = None,
                     sleep: Callable[[float], None] = time.sleep) -> str:
    """Poll until `get` reports the resource as not found; return that output."""

    def poll() -> str:
        result = get_status(config, ref)
        if not result.started:
            raise _not_started(result)
        if not result.success and 'notfound' in result.output.replace(' ', '').lower():
            return result.output
        raise NotReady(f"{ref} still present", output=result.output)

    policy = RetryPolicy.for_timeout(timeout, interval, retryable=lambda e: isinstance(e, NotReady))
    logger.info(f"Waiting up to {timeout}s for {ref} to be removed")
    try:
        return with_retry(poll, policy, deadline=deadline, sleep=sleep)
    except RetryExhausted as e:
        raise NotReady(f"{ref} was not removed within {timeout}s", output=e.output) from e


def query_jsonpath(config: MeshConfig, kind: str, jsonpath: str, namespace: str = '',
                   selector: str = '', policy: Optional[RetryPolicy] = None,
                   sleep: Callable[[float], None] = time.sleep) -> str:
    """Extract a field with `-o jsonpath=<expr>`, retrying transient failures."""
    cmd = [config.cli, 'get', kind]
    if namespace:
        cmd += ['-n', namespace]
    if selector:
        cmd += ['-l', selector]
    cmd += ['-o', f'jsonpath={jsonpath}'] + config.kubeconfig_args()

    def query() -> str:
        result = execute(Invocation(cmd))
        if not result.success:
            raise ExecutionFailed(f"Query failed: {result.command}\nerror: {result.error}",
                                  output=result.output, returncode=result.returncode)
        return result.output.strip().strip("'")

    policy = policy or RetryPolicy(max_attempts=5, delay=5,
                                   retryable=lambda e: getattr(e, 'returncode', -1) != -1)
    try:
        return with_retry(query, policy, sleep=sleep)
    except RetryExhausted as e:
        raise ExecutionFailed(f"Query for {kind} {jsonpath} kept failing", output=e.output) from e


def get_ingress_host(config: MeshConfig, selector: str = 'app=istio-ingressgateway',
                     namespace: Optional[str] = None, **kwargs) -> str:
    """Return the ingress gateway route host."""
    namespace = config.mesh_namespace if namespace is None else namespace
    return query_jsonpath(config, 'routes', '{.items[0].spec.host}',
                          namespace=namespace, selector=selector, **kwargs)


def get_ingress_port(config: MeshConfig, port_name: str = 'https',
                     service: str = 'istio-ingressgateway',
                     namespace: Optional[str] = None, **kwargs) -> str:
    """Return the named port of the ingress gateway service."""
    namespace = config.mesh_namespace if namespace is None else namespace
    port = query_jsonpath(config, f'service/{service}',
                          f'{{.spec.ports[?(@.name=="{port_name}")].port}}',
                          namespace=namespace, **kwargs)
    if not PORT_PATTERN.match(port):
        raise ExecutionFailed(f"unable to find the {port_name} port of {service}", output=port)
    return port


def get_ingress_host_ip(config: MeshConfig, **kwargs) -> str:
    """Return the router endpoint IP address."""
    return query_jsonpath(config, 'endpoints', '{.items[0].subsets[0].addresses[0].ip}',
                          namespace='default', selector='router', **kwargs)


def check_pods_running(config: MeshConfig, namespace: str, selector: str,
                       timeout: float = 120, interval: float = 5,
                       sleep: Callable[[float], None] = time.sleep) -> list[str]:
    """Wait until every pod matching selector is Running; return their phases."""
    cmd = [config.cli, 'get', 'pods', '-n', namespace, '-l', selector,
           '-o', 'jsonpath={.items[*].status.phase}'] + config.kubeconfig_args()

    def poll() -> list[str]:
        result = execute(Invocation(cmd))
        if not result.started:
            raise _not_started(result)
        phases = result.output.split()
        if result.success and phases and all(p == 'Running' for p in phases):
            return phases
        raise NotReady(f"Pods {selector} in {namespace} not running: {phases or 'none found'}",
                       output=result.output)

    policy = RetryPolicy.for_timeout(timeout, interval, retryable=lambda e: isinstance(e, NotReady))
    try:
        return with_retry(poll, policy, sleep=sleep)
    except RetryExhausted as e:
        raise NotReady(f"Pods {selector} in {namespace} not running after {timeout}s",
                       output=e.output) from e


class HostPinningAdapter(HTTPAdapter):
    """Send SNI and verify the certificate for a fixed host name.

    Lets a request go to the ingress address while TLS is checked against the
    virtual host the gateway serves.
    """

    def __init__(self, server_hostname: str, **kwargs):
        self.server_hostname = server_hostname
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs['server_hostname'] = self.server_hostname
        kwargs['assert_hostname'] = self.server_hostname
        super().init_poolmanager(*args, **kwargs)


def validate_ingress(url: str, host: Optional[str] = None, ca_file: Optional[str] = None,
                     timeout: float = 10, ingress_address: Optional[str] = None) -> tuple[bool, str]:
    """Check that a request through the ingress gateway succeeds.

    Args:
        url: Request URL (e.g., https://bookinfo.example.com:443/productpage)
        host: Host header to route on, if different from the URL host
        ca_file: CA bundle for the gateway certificate (None skips verification)
        timeout: Request timeout in seconds
        ingress_address: Connect here instead of the URL host, keeping the URL
            host for the Host header, SNI and certificate verification

    Returns:
        (success, message) tuple
    """
    request_url = url
    headers = {'Host': host} if host else {}
    with requests.Session() as session:
        if ingress_address:
            parts = urlsplit(url)
            virtual_host = host or parts.hostname
            netloc = f"{ingress_address}:{parts.port}" if parts.port else ingress_address
            request_url = urlunsplit(parts._replace(netloc=netloc))
            headers = {'Host': virtual_host}
            session.mount(f"{parts.scheme}://", HostPinningAdapter(virtual_host))
        try:
            resp = session.get(request_url, headers=headers, verify=ca_file or False, timeout=timeout)
        except requests.exceptions.ConnectionError as e:
            return False, f"Cannot connect to {url}: {e}"
        except requests.exceptions.Timeout:
            return False, f"Timeout connecting to {url}"
        except requests.exceptions.RequestException as e:
            return False, f"Error requesting {url}: {e}"

    if resp.status_code == 200:
        return True, f"Ingress {url} returned 200"
    return False, f"Unexpected ingress response: {resp.status_code} - {resp.text[:100]}"
