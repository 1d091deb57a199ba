import pytest

from nostr_feedz import db, nostr

# NIP-19 reference key pair.
NPUB = "npub10elfcs4fr0l0r8af98jlmgdh9c8tcxjvz9qkw038js35mp4dma8qzvjptg"
PUBKEY_HEX = "7e7e9c42a91bfef19fa929e5fda1b72e0ebc1a4c1141673e2794234d86addf4e"
NSEC = "nsec1vl029mgpspedva04g90vltkh6fvh240zqtv9k0t9af8935ke9laqsnlfe5"
PRIVKEY_HEX = "67dea2ed018072d675f5415ecfaed7d2597555e202d85b3d65ea4e58d2d92ffa"

SECOND_PRIVKEY_HEX = "0000000000000000000000000000000000000000000000000000000000000003"


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads each get a real connection."""
    engine = db.init_engine(f"sqlite:///{tmp_path / 'feedz.db'}")
    factory = db.get_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def _reset_delegated_signer():
    nostr.clear_delegated_signer()
    yield
    nostr.clear_delegated_signer()
