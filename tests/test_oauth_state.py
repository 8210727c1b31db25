from oauth_state import generate_state, read_state


def test_state_round_trips_user_id() -> None:
    assert read_state(generate_state(7)) == 7


def test_tampered_or_missing_state_is_rejected() -> None:
    token = generate_state(7)

    assert read_state(token + "tampered") is None
    assert read_state("") is None
    assert read_state(None) is None


def test_expired_state_is_rejected() -> None:
    assert read_state(generate_state(7), max_age_secs=-1) is None
