"""
Authentication and the shared API session.

The operator logs in once at startup (from the in-cluster service account,
or from the kubeconfig for the local runs), creates one ``aiohttp`` session,
and puts it into a context variable for all the tasks spawned from then on.
The API-calling functions are decorated with :func:`authenticated`
and receive the session as the ``context`` kwarg (or use the explicit one).

There is no re-authentication: if the credentials are revoked,
the API calls fail with :class:`errors.APIUnauthorizedError`
and the reconciliations are retried like on any other error.
"""
import base64
import contextlib
import functools
import os
import ssl
import tempfile
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional, TypeVar, Union, cast

import aiohttp
import yaml

from capifleet._cogs.helpers import versions
from capifleet._cogs.structs import credentials

# Set once by the operator's startup; inherited by all the tasks it spawns.
api_context_var: ContextVar["APIContext"] = ContextVar('api_context_var')

# A typevar to show that we return a function with the same signature as given.
_F = TypeVar('_F', bound=Callable[..., Any])


def authenticated(fn: _F) -> _F:
    """
    A decorator to inject the pre-authenticated session to a requesting routine.
    """
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        if kwargs.get('context') is None:
            try:
                kwargs['context'] = api_context_var.get()
            except LookupError:
                raise credentials.LoginError("The operator is not logged in to the API.")
        return await fn(*args, **kwargs)

    return cast(_F, wrapper)


class APIContext:
    """
    A container for an aiohttp session and the info for the URL building.
    """

    # The main contained object used by the API methods.
    session: aiohttp.ClientSession

    # Contextual information for URL building.
    server: str
    default_namespace: Optional[str]

    def __init__(
            self,
            info: credentials.ConnectionInfo,
    ) -> None:
        super().__init__()
        self.session = self.make_aiohttp_session(info)
        self.session.headers['User-Agent'] = f'capifleet/{versions.version or "unknown"}'
        self.server = info.server
        self.default_namespace = info.default_namespace

    async def __aenter__(self) -> "APIContext":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.session.close()

    @staticmethod
    def make_aiohttp_session(info: credentials.ConnectionInfo) -> aiohttp.ClientSession:

        # The SSL module accepts the client certificates only as files, never as data.
        # Avoid the temporary files when not needed: the filesystem can be read-only.
        with contextlib.ExitStack() as stack:
            cert_path = info.certificate_path
            if not cert_path and info.certificate_data:
                cert_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
                cert_file.write(decode_to_pem(info.certificate_data).encode('ascii'))
                cert_path = cert_file.name

            pkey_path = info.private_key_path
            if not pkey_path and info.private_key_data:
                pkey_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
                pkey_file.write(decode_to_pem(info.private_key_data).encode('ascii'))
                pkey_path = pkey_file.name

            context = ssl.create_default_context(
                purpose=ssl.Purpose.SERVER_AUTH,
                cafile=info.ca_path,
                cadata=decode_to_pem(info.ca_data) if info.ca_data is not None else None,
            )
            if cert_path and pkey_path:
                context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)

        if info.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        headers: Dict[str, str] = {}
        if info.scheme and info.token:
            headers['Authorization'] = f'{info.scheme} {info.token}'
        elif info.scheme:
            headers['Authorization'] = f'{info.scheme}'
        elif info.token:
            headers['Authorization'] = f'Bearer {info.token}'

        auth: Optional[aiohttp.BasicAuth] = None
        if info.username and info.password:
            auth = aiohttp.BasicAuth(info.username, info.password)

        return aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=0, ssl=context),
            headers=headers,
            auth=auth,
        )


def decode_to_pem(data: Union[str, bytes]) -> str:
    match data:
        case str() if data.startswith('-----BEGIN '):
            return data
        case bytes() if data.startswith(b'-----BEGIN '):
            return data.decode('ascii')
        case _:
            return base64.b64decode(data).decode('ascii')


def login() -> credentials.ConnectionInfo:
    """
    Find the credentials: in-cluster first, the kubeconfig for the local runs.
    """
    info = login_with_service_account() or login_with_kubeconfig()
    if info is None:
        raise credentials.LoginError("Neither the service account nor a kubeconfig is found.")
    return info


def login_with_service_account() -> Optional[credentials.ConnectionInfo]:
    # As per https://kubernetes.io/docs/tasks/run-application/access-api-from-pod/
    token_path = '/var/run/secrets/kubernetes.io/serviceaccount/token'
    ns_path = '/var/run/secrets/kubernetes.io/serviceaccount/namespace'
    ca_path = '/var/run/secrets/kubernetes.io/serviceaccount/ca.crt'

    if not os.path.exists(token_path):
        return None

    with open(token_path, encoding='utf-8') as f:
        token = f.read().strip()

    namespace: Optional[str] = None
    if os.path.exists(ns_path):
        with open(ns_path, encoding='utf-8') as f:
            namespace = f.read().strip()

    return credentials.ConnectionInfo(
        server='https://kubernetes.default.svc',
        ca_path=ca_path if os.path.exists(ca_path) else None,
        token=token or None,
        default_namespace=namespace or None,
    )


def login_with_kubeconfig() -> Optional[credentials.ConnectionInfo]:
    """
    Get the raw credentials of the current context of the kubeconfig file(s).

    Only the static credentials are supported: tokens, client certificates,
    basic auth. No exec-plugins or auth-providers are executed.
    """
    # As per https://kubernetes.io/docs/concepts/configuration/organize-cluster-access-kubeconfig/
    kubeconfig = os.environ.get('KUBECONFIG')
    if not kubeconfig and os.path.exists(os.path.expanduser('~/.kube/config')):
        kubeconfig = '~/.kube/config'
    if not kubeconfig:
        return None

    paths = [os.path.expanduser(path.strip()) for path in kubeconfig.split(os.pathsep)]

    # When merging multiple files, the first mention of every entry wins.
    current_context: Optional[str] = None
    contexts: Dict[str, Any] = {}
    clusters: Dict[str, Any] = {}
    users: Dict[str, Any] = {}
    for path in filter(None, paths):
        with open(path, encoding='utf-8') as f:
            config = yaml.safe_load(f.read()) or {}

        current_context = current_context or config.get('current-context')
        for item in config.get('contexts') or []:
            contexts.setdefault(item['name'], item.get('context') or {})
        for item in config.get('clusters') or []:
            clusters.setdefault(item['name'], item.get('cluster') or {})
        for item in config.get('users') or []:
            users.setdefault(item['name'], item.get('user') or {})

    if current_context is None:
        raise credentials.LoginError("Current context is not set in kubeconfigs.")
    try:
        context = contexts[current_context]
        cluster = clusters[context['cluster']]
        user = users.get(context.get('user'), {})
    except KeyError as e:
        raise credentials.LoginError(f"Broken context {current_context!r} in kubeconfigs.") from e

    return credentials.ConnectionInfo(
        server=cluster.get('server'),
        ca_path=cluster.get('certificate-authority'),
        ca_data=cluster.get('certificate-authority-data'),
        insecure=cluster.get('insecure-skip-tls-verify'),
        certificate_path=user.get('client-certificate'),
        certificate_data=user.get('client-certificate-data'),
        private_key_path=user.get('client-key'),
        private_key_data=user.get('client-key-data'),
        username=user.get('username'),
        password=user.get('password'),
        token=user.get('token'),
        default_namespace=context.get('namespace'),
    )
