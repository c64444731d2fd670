# File: pipeline/abstract_etl/data_downloader.py

from abc import ABC, abstractmethod  # Importing abstract base classes from Python's built-in library
import logging
import os  # Importing os for file path operations
import requests  # Importing requests for HTTP operations
from typing import List, Optional  # Importing Optional for type hinting optional return types


class DataDownloader(ABC):
    """
    Abstract base class for downloading study input files.
    Provides common methods for streaming downloads and validating file presence.

    Attributes:
        output_dir (str): Directory where the downloaded files will be saved.
        logger (logging.Logger): Logger used for download progress and errors.
    """

    def __init__(self, output_dir: str, logger: Optional[logging.Logger] = None) -> None:
        # Check if the output directory path is provided
        if not output_dir:
            raise ValueError("Output directory path cannot be empty.")

        os.makedirs(output_dir, exist_ok=True)
        self.output_dir = output_dir
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def download_file(self, file_id: str) -> Optional[List[str]]:
        """
        Abstract method for downloading the files of one accession.

        Args:
            file_id (str): Identifier of the dataset or platform to download.

        Returns:
            Optional[List[str]]: Paths of the downloaded files, or None if download failed.
        """
        pass

    def download_from_url(self, url: str, output_path: str, timeout: int = 60) -> Optional[str]:
        """
        Downloads a file from the specified URL and saves it to the output path.

        Args:
            url (str): URL of the file to download.
            output_path (str): Path where the file will be saved.
            timeout (int): Seconds to wait for the server to respond.

        Returns:
            Optional[str]: Path to the saved file if successful, None otherwise.

        Raises:
            ValueError: If URL or output path are empty.
        """
        if not url:
            raise ValueError("URL cannot be empty.")
        if not output_path:
            raise ValueError("Output path cannot be empty.")

        partial_path = f"{output_path}.part"
        try:
            self.logger.info(f"Downloading {url}")
            response = requests.get(url, stream=True, timeout=timeout)
            response.raise_for_status()  # Raise error for 4xx/5xx responses

            # Write to a partial file first so an interrupted download never looks complete
            with open(partial_path, 'wb') as file:
                for chunk in response.iter_content(chunk_size=8192):
                    file.write(chunk)
            os.replace(partial_path, output_path)

            self.logger.info(f"Download complete: {output_path}")
            return output_path
        except requests.exceptions.HTTPError as http_err:
            self.logger.error(f"HTTP error occurred while downloading {url}: {http_err}")
        except requests.exceptions.ConnectionError:
            self.logger.error(f"Connection error while downloading {url}. Check internet connectivity.")
        except requests.exceptions.Timeout:
            self.logger.error(f"Timeout while trying to download {url}")
        except requests.exceptions.RequestException as req_err:
            self.logger.error(f"Request error while downloading {url}: {req_err}")

        if os.path.exists(partial_path):
            os.remove(partial_path)
        return None

    @staticmethod
    def file_exists(file_path: str) -> bool:
        """
        Check if a non-empty file already exists at the given path.

        Args:
            file_path (str): Path to check.

        Returns:
            bool: True if the file exists and is not empty, False otherwise.

        Raises:
            ValueError: If the file path is empty.
        """
        if not file_path:
            raise ValueError("File path cannot be empty.")
        return os.path.isfile(file_path) and os.path.getsize(file_path) > 0
