import pytest

import getcourse_dl

ROOT_URL = 'https://school.example.com'


class FakeResponse:
    def __init__(self, body=b'', status_code=200):
        if isinstance(body, str):
            body = body.encode('utf-8')
        self.content = body
        self.status_code = status_code

    @property
    def text(self):
        return self.content.decode('utf-8')


class FakeSession:
    """
    Stands in for requests.Session.

    `routes` maps a URL (or ('POST', url)) to a body, a (status, body) tuple,
    or an exception instance to raise. Unknown URLs answer 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def _answer(self, key):
        route = self.routes.get(key)
        if route is None:
            return FakeResponse(b'', 404)
        if isinstance(route, BaseException):
            raise route
        if isinstance(route, tuple):
            status, body = route
            return FakeResponse(body, status)
        return FakeResponse(route)

    def get(self, url, **kwargs):
        self.calls.append(('GET', url, None))
        return self._answer(url)

    def post(self, url, data=None, **kwargs):
        self.calls.append(('POST', url, data))
        return self._answer(('POST', url))


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def settings(tmp_path):
    return getcourse_dl.Settings(
        email='student@example.com',
        password='hunter22',
        root_url=ROOT_URL + '/',
        download_dir=tmp_path,
    )
