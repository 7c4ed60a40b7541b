import os
import tempfile

import pytest

from piece_indexer.persistence import PieceIndexRepository


@pytest.fixture
def repository():
    """Create temporary piece index database."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    repo = PieceIndexRepository(path)
    yield repo
    repo.close()
    os.unlink(path)
