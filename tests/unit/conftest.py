import pytest

from polyvenue.storage import LocalBlobStorage


@pytest.fixture()
def storage(tmp_path):
    return LocalBlobStorage(tmp_path / "blobs")
