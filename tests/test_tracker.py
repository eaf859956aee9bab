import threading

from sitemirror.tracker import REQUEST_SEEN, WRITE_SEEN, RequestTracker


def test_admit_once_per_name():
    tracker = RequestTracker()
    assert tracker.admit(REQUEST_SEEN, "https://site.example/")
    assert not tracker.admit(REQUEST_SEEN, "https://site.example/")
    assert tracker.admit(WRITE_SEEN, "https://site.example/")
    assert tracker.seen(REQUEST_SEEN, "https://site.example/")
    assert not tracker.seen("other", "https://site.example/")
    assert tracker.count(REQUEST_SEEN) == 1
    assert tracker.count("other") == 0


def test_concurrent_admit_has_one_winner():
    tracker = RequestTracker()
    results = []
    barrier = threading.Barrier(16)

    def admit():
        barrier.wait()
        results.append(tracker.admit(REQUEST_SEEN, "https://site.example/home"))

    threads = [threading.Thread(target=admit) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
