# File: tests/expression_pipeline_tests/test_geo_raw_downloader.py

import io
import os
import tarfile
from unittest.mock import MagicMock, patch

import pytest
import requests

from pipeline.expression_pipeline.geo_raw_downloader import GeoRawDownloader, geo_stub


def _tar_bytes(members):
    """
    Builds an in-memory tar archive from a {name: content} mapping.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def _response(content=b"", status_error=None):
    response = MagicMock()
    response.iter_content.return_value = [content]
    if status_error:
        response.raise_for_status.side_effect = status_error
    return response


@pytest.fixture
def setup_output_dir(tmp_path):
    output_dir = tmp_path / "data"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def downloader(setup_output_dir):
    return GeoRawDownloader(output_dir=str(setup_output_dir), logger=MagicMock())


@pytest.mark.parametrize("accession, expected", [
    ("GSE22552", "GSE22nnn"),
    ("GSE89540", "GSE89nnn"),
    ("GPL96", "GPLnnn"),
    ("GPL16686", "GPL16nnn"),
])
def test_geo_stub(accession, expected):
    assert geo_stub(accession) == expected


def test_geo_stub_invalid():
    with pytest.raises(ValueError):
        geo_stub("E-MTAB-1")


def test_urls(downloader):
    assert downloader.series_raw_url("GSE22552") == (
        "https://ftp.ncbi.nlm.nih.gov/geo/series/GSE22nnn/GSE22552/suppl/GSE22552_RAW.tar"
    )
    assert downloader.platform_annotation_url("GPL570") == (
        "https://ftp.ncbi.nlm.nih.gov/geo/platforms/GPLnnn/GPL570/annot/GPL570.annot.gz"
    )


@patch("requests.get")
def test_download_file_success(mock_get, downloader, setup_output_dir):
    """
    Test download and extraction of a series _RAW.tar.
    """
    mock_get.return_value = _response(_tar_bytes({
        "GSM556617_CFU-E_1.CEL.gz": b"cel-1",
        "GSM556618_CFU-E_2.CEL.gz": b"cel-2",
    }))

    files = downloader.download_file("GSE22552")

    raw_dir = setup_output_dir / "GSE22552_RAW"
    assert files == [str(raw_dir / "GSM556617_CFU-E_1.CEL.gz"), str(raw_dir / "GSM556618_CFU-E_2.CEL.gz")]
    assert not (setup_output_dir / "GSE22552_RAW.tar").exists()
    assert mock_get.call_args[0][0].endswith("/GSE22552/suppl/GSE22552_RAW.tar")


@patch("requests.get")
def test_download_file_skips_unsafe_members(mock_get, downloader, setup_output_dir):
    mock_get.return_value = _response(_tar_bytes({"../evil.txt": b"x", "GSM1.CEL.gz": b"ok"}))
    files = downloader.download_file("GSE1")
    assert [os.path.basename(f) for f in files] == ["GSM1.CEL.gz"]
    assert not (setup_output_dir / "evil.txt").exists()


@patch("requests.get")
def test_download_file_existing_files(mock_get, downloader, setup_output_dir):
    raw_dir = setup_output_dir / "GSE22552_RAW"
    raw_dir.mkdir()
    (raw_dir / "GSM1.CEL.gz").write_bytes(b"cel")

    files = downloader.download_file("GSE22552")
    assert files == [str(raw_dir / "GSM1.CEL.gz")]
    mock_get.assert_not_called()


@patch("requests.get")
def test_download_file_http_error(mock_get, downloader, setup_output_dir):
    mock_get.return_value = _response(status_error=requests.exceptions.HTTPError("404 Not Found"))
    assert downloader.download_file("GSE404") is None
    assert not (setup_output_dir / "GSE404_RAW.tar.part").exists()


@patch("requests.get", side_effect=requests.exceptions.ConnectionError())
def test_download_file_connection_error(mock_get, downloader):
    assert downloader.download_file("GSE22552") is None


@patch("requests.get")
def test_download_file_corrupt_archive(mock_get, downloader):
    mock_get.return_value = _response(b"not a tar archive")
    assert downloader.download_file("GSE22552") is None


@patch("requests.get")
def test_download_platform_annotation(mock_get, downloader, setup_output_dir):
    mock_get.return_value = _response(b"annotation")
    target = setup_output_dir / "GPL96.annot.gz"

    assert downloader.download_platform_annotation("GPL96", str(target)) == str(target)
    assert target.read_bytes() == b"annotation"

    # Second call finds the file and does not hit the network again
    downloader.download_platform_annotation("GPL96", str(target))
    assert mock_get.call_count == 1
