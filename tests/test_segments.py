import pytest

import getcourse_dl

SEGMENTS = [f'https://cdn.example.com/v/1080/seg-{i}.ts' for i in range(10)]
BODIES = {url: bytes([0x47, i]) * (i + 1) for i, url in enumerate(SEGMENTS)}


def expected_bytes(urls):
    return b''.join(BODIES[url] for url in urls)


def test_download_segments_concatenates_in_order(make_session, tmp_path):
    session = make_session(BODIES)
    output = tmp_path / 'Algebra' / 'nested' / '0. Intro.mp4'

    written = getcourse_dl.download_segments(session, SEGMENTS, output)

    assert output.read_bytes() == expected_bytes(SEGMENTS)
    assert written == len(expected_bytes(SEGMENTS))
    assert [url for _, url, _ in session.calls] == SEGMENTS


def test_download_segments_truncates_existing_file(make_session, tmp_path):
    session = make_session(BODIES)
    output = tmp_path / 'lesson.mp4'
    output.write_bytes(b'stale content that is much longer than the new download' * 10)

    getcourse_dl.download_segments(session, SEGMENTS[:2], output)
    getcourse_dl.download_segments(session, SEGMENTS[:2], output)

    assert output.read_bytes() == expected_bytes(SEGMENTS[:2])


def test_download_segments_empty_playlist(make_session, tmp_path):
    output = tmp_path / 'empty.mp4'

    assert getcourse_dl.download_segments(make_session(), [], output) == 0
    assert output.read_bytes() == b''


def test_download_segments_failed_segment_leaves_partial_file(make_session, tmp_path):
    routes = dict(BODIES)
    routes[SEGMENTS[1]] = (404, 'gone')
    session = make_session(routes)
    output = tmp_path / 'lesson.mp4'

    with pytest.raises(getcourse_dl.TransportError) as excinfo:
        getcourse_dl.download_segments(session, SEGMENTS[:3], output)

    assert excinfo.value.status == 404
    assert output.read_bytes() == BODIES[SEGMENTS[0]]
    assert SEGMENTS[2] not in [url for _, url, _ in session.calls]


def test_download_segments_interrupt_removes_partial_file(make_session, tmp_path):
    routes = dict(BODIES)
    routes[SEGMENTS[1]] = KeyboardInterrupt()
    output = tmp_path / 'lesson.mp4'

    with pytest.raises(KeyboardInterrupt):
        getcourse_dl.download_segments(make_session(routes), SEGMENTS[:3], output)

    assert not output.exists()


@pytest.mark.parametrize('workers', [2, 3, 16])
def test_download_segments_concurrent_keeps_order(make_session, tmp_path, workers):
    session = make_session(BODIES)
    output = tmp_path / 'lesson.mp4'

    getcourse_dl.download_segments(session, SEGMENTS, output, workers=workers)

    assert output.read_bytes() == expected_bytes(SEGMENTS)
    assert sorted(url for _, url, _ in session.calls) == sorted(SEGMENTS)


def test_download_segments_concurrent_failure_propagates(make_session, tmp_path):
    routes = dict(BODIES)
    routes[SEGMENTS[4]] = (500, 'boom')
    output = tmp_path / 'lesson.mp4'

    with pytest.raises(getcourse_dl.TransportError):
        getcourse_dl.download_segments(make_session(routes), SEGMENTS, output, workers=3)

    assert output.read_bytes() == expected_bytes(SEGMENTS[:4])


def test_download_segments_reports_unwritable_path(make_session, tmp_path):
    blocker = tmp_path / 'not-a-dir'
    blocker.write_text('file')

    with pytest.raises(OSError):
        getcourse_dl.download_segments(make_session(BODIES), SEGMENTS[:1], blocker / 'lesson.mp4')
