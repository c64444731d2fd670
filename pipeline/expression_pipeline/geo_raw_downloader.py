# File: pipeline/expression_pipeline/geo_raw_downloader.py

import logging  # For logging information and errors
import os  # For file and directory management
import re
import tarfile  # For handling _RAW.tar extraction
from typing import List, Optional  # For type hints

from config.logger_config import configure_logger  # Import centralized logger configuration
from pipeline.abstract_etl.data_downloader import DataDownloader


def geo_stub(accession: str) -> str:
    """
    Builds the GEO FTP range folder for an accession (GSE22552 -> GSE22nnn, GPL96 -> GPLnnn).

    Args:
        accession (str): GEO series or platform accession.

    Returns:
        str: Range folder name.

    Raises:
        ValueError: If the accession is not a GEO accession.
    """
    match = re.fullmatch(r"(G[A-Z]{2})(\d+)", accession or "")
    if not match:
        raise ValueError(f"Not a GEO accession: {accession!r}")
    prefix, digits = match.groups()
    return f"{prefix}{digits[:-3]}nnn"


class GeoRawDownloader(DataDownloader):
    """
    Downloads the raw supplementary archive of a GEO series and platform annotation files.

    Attributes:
        output_dir (str): Directory holding one <GSE>_RAW folder per series.
        base_url (str): Base URL of the GEO repository.
    """

    def __init__(self, output_dir: str, logger: Optional[logging.Logger] = None, debug: bool = False) -> None:
        logger = logger or configure_logger(
            name="GeoRawDownloader",
            log_file="geo_raw_downloader.log",
            level=logging.DEBUG if debug else logging.INFO,
            output="both"
        )
        super().__init__(output_dir, logger=logger)
        self.base_url: str = "https://ftp.ncbi.nlm.nih.gov/geo"

    def series_raw_url(self, series_id: str) -> str:
        return f"{self.base_url}/series/{geo_stub(series_id)}/{series_id}/suppl/{series_id}_RAW.tar"

    def platform_annotation_url(self, platform_id: str) -> str:
        return f"{self.base_url}/platforms/{geo_stub(platform_id)}/{platform_id}/annot/{platform_id}.annot.gz"

    def download_file(self, file_id: str, raw_dir: Optional[str] = None) -> Optional[List[str]]:
        """
        Downloads and extracts <GSE>_RAW.tar unless the raw directory is already populated.

        Args:
            file_id (str): GEO series ID (e.g., "GSE22552").
            raw_dir (Optional[str]): Extraction directory (default: <output_dir>/<GSE>_RAW).

        Returns:
            Optional[List[str]]: Paths of the raw sample files, or None if download or extraction failed.
        """
        if not file_id:
            raise ValueError("File ID cannot be empty.")

        raw_dir = raw_dir or os.path.join(self.output_dir, f"{file_id}_RAW")
        existing = self._list_files(raw_dir)
        if existing:
            self.logger.info(f"Raw files for {file_id} already present in {raw_dir}; skipping download.")
            return existing

        tar_path = os.path.join(self.output_dir, f"{file_id}_RAW.tar")
        downloaded = self.download_from_url(self.series_raw_url(file_id), tar_path)
        if not downloaded:
            self.logger.error(f"Failed to download raw archive for {file_id}.")
            return None

        extracted = self._extract_file(downloaded, raw_dir)
        if not extracted:
            self.logger.error(f"Extraction failed for {file_id}.")
            return None
        self.logger.info(f"Extracted {len(extracted)} raw files for {file_id} into {raw_dir}")
        return extracted

    def download_platform_annotation(self, platform_id: str, output_path: str) -> Optional[str]:
        """
        Downloads the GEO annotation file (<GPL>.annot.gz) for a platform.

        Args:
            platform_id (str): GEO platform ID (e.g., "GPL570").
            output_path (str): Destination path.

        Returns:
            Optional[str]: Path to the annotation file, or None if the download failed.
        """
        if self.file_exists(output_path):
            self.logger.info(f"Annotation for {platform_id} already present: {output_path}")
            return output_path
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        return self.download_from_url(self.platform_annotation_url(platform_id), output_path)

    def _extract_file(self, tar_path: str, extract_dir: str) -> Optional[List[str]]:
        """
        Extracts a tar archive, refusing members that would land outside extract_dir.

        Args:
            tar_path (str): Path to the tar archive.
            extract_dir (str): Directory to extract the files to.

        Returns:
            Optional[List[str]]: Extracted file paths, or None if extraction failed.
        """
        os.makedirs(extract_dir, exist_ok=True)
        root = os.path.realpath(extract_dir)
        try:
            with tarfile.open(tar_path, "r:*") as tar:
                members = []
                for member in tar.getmembers():
                    target = os.path.realpath(os.path.join(extract_dir, member.name))
                    if not target.startswith(root + os.sep) or not member.isfile():
                        self.logger.warning(f"Skipping archive member {member.name}")
                        continue
                    members.append(member)
                tar.extractall(path=extract_dir, members=members)
        except tarfile.TarError as tar_err:
            self.logger.error(f"Tar file error for {tar_path}: {tar_err}")
            return None

        os.remove(tar_path)
        return self._list_files(extract_dir) or None

    @staticmethod
    def _list_files(directory: str) -> List[str]:
        if not os.path.isdir(directory):
            return []
        return sorted(
            os.path.join(directory, f)
            for f in os.listdir(directory)
            if os.path.isfile(os.path.join(directory, f))
        )
