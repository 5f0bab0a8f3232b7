from skystream.config import Settings, _get_candidate_labels


def test_candidate_labels_default(monkeypatch):
    monkeypatch.delenv("CANDIDATE_LABELS", raising=False)
    assert _get_candidate_labels() == ["Politics"]


def test_candidate_labels_from_env(monkeypatch):
    monkeypatch.setenv("CANDIDATE_LABELS", " AI , Machine Learning,,")
    assert _get_candidate_labels() == ["AI", "Machine Learning"]
    assert Settings().CANDIDATE_LABELS == ["AI", "Machine Learning"]
