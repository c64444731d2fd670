# File: scripts/scan_pipeline.py
# Runs the SCAN expression pipeline: normalize -> collapse -> merge -> batch-correct -> slice -> signatures.

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from config.db_config import init_engine
from config.logger_config import configure_logger
from pipeline.expression_pipeline.batch_corrector import BatchCorrector
from pipeline.expression_pipeline.expression_merger import ExpressionMerger
from pipeline.expression_pipeline.expression_normalizer import build_normalizer, normalize_with_cache
from pipeline.expression_pipeline.geo_raw_downloader import GeoRawDownloader
from pipeline.expression_pipeline.pipeline_file_handler import PipelineFileHandler
from pipeline.expression_pipeline.probe_annotator import ProbeAnnotator
from pipeline.expression_pipeline.sample_metadata import load_sample_metadata
from pipeline.expression_pipeline.signature_builder import SignatureBuilder, write_signature
from utils.config_utils import DEFAULT_CONFIG_PATH, ensure_directories, load_pipeline_config, study_ids

COMBINED = "combined"


@dataclass
class PipelineOutputs:
    combined: pd.DataFrame
    metadata: pd.DataFrame
    batch_corrected: pd.DataFrame
    combined_slices: Dict[str, pd.DataFrame] = field(default_factory=dict)
    batch_corrected_slices: Dict[str, pd.DataFrame] = field(default_factory=dict)
    signatures: Dict[str, pd.DataFrame] = field(default_factory=dict)
    signature_genes: Dict[str, List[str]] = field(default_factory=dict)


class ScanPipeline:
    """
    Orchestrates preprocessing of the configured GEO studies into combined, batch-corrected
    and signature tables.
    """

    def __init__(
        self,
        config: dict,
        download: bool = False,
        force_normalize: bool = False,
        record_runs: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initializes the pipeline.

        Args:
            config (dict): Resolved configuration (see utils.config_utils.load_pipeline_config).
            download (bool): Fetch raw archives and platform annotations from GEO first.
            force_normalize (bool): Ignore cached normalized matrices.
            record_runs (bool): Record step outcomes in the run-log database.
            logger (Optional[logging.Logger]): Shared logger (default: centralized pipeline logger).
        """
        self.config = config
        self.download = download
        self.force_normalize = force_normalize
        self.logger = logger or configure_logger(
            name="ScanPipeline",
            log_file="scan_pipeline.log",
            level=logging.INFO,
            output="both"
        )

        ensure_directories(config, ["data_dir", "output_dir"])
        if record_runs:
            default_url = f"sqlite:///{os.path.join(config['output_dir'], 'pipeline_log.db')}"
            init_engine(os.getenv("PIPELINE_DATABASE_URL") or default_url)

        self.file_handler = PipelineFileHandler(
            config["output_dir"], table_prefix=config["table_prefix"], record_runs=record_runs, logger=self.logger
        )
        self.studies = study_ids(config)

    # ------------------ Steps ------------------

    def acquire(self) -> None:
        """
        Downloads raw archives and platform annotations that are not on disk yet.
        """
        downloader = GeoRawDownloader(self.config["data_dir"], logger=self.logger)
        for study_id in self.studies:
            study = self.config["studies"][study_id]
            files = downloader.download_file(study_id, raw_dir=study["raw_dir"])
            if files:
                self.file_handler.log_step(study_id, "downloaded", message=f"{len(files)} raw files")
            else:
                self.file_handler.log_step(study_id, "downloaded", status="failed", message="raw archive unavailable")

            annotation = study["annotation"]
            if not os.path.exists(annotation["path"]) and not annotation.get("db_package") and study.get("platform"):
                if not downloader.download_platform_annotation(study["platform"], annotation["path"]):
                    self.logger.error(f"Annotation for {study['platform']} could not be downloaded")

    def normalize_study(self, study_id: str) -> pd.DataFrame:
        study = self.config["studies"][study_id]
        normalizer = build_normalizer(study_id, study, rscript=self.config.get("rscript"), logger=self.logger)
        cache_path = self.file_handler.normalized_cache_path(study_id)
        try:
            expr, cached = normalize_with_cache(normalizer, cache_path, force=self.force_normalize)
        except Exception as e:
            self.file_handler.log_step(study_id, "normalized", status="failed", message=str(e))
            raise
        self.file_handler.log_step(
            study_id, "normalized", status="cached" if cached else "completed",
            message=f"{expr.shape[0]} probes x {expr.shape[1]} samples", file_names=[cache_path],
        )
        return expr

    def collapse_study(self, study_id: str, expr: pd.DataFrame) -> pd.DataFrame:
        annotator = ProbeAnnotator(
            study_id, self.config["studies"][study_id]["annotation"], rscript=self.config.get("rscript"), logger=self.logger
        )
        try:
            genes = annotator.collapse(expr)
        except Exception as e:
            self.file_handler.log_step(study_id, "collapsed", status="failed", message=str(e))
            raise
        self.file_handler.log_step(study_id, "collapsed", message=f"{genes.shape[0]} genes")
        return genes

    def merge(self, gene_tables: Dict[str, pd.DataFrame], metadata: pd.DataFrame):
        merger = ExpressionMerger(metadata, logger=self.logger)
        try:
            combined, ordered = merger.merge(gene_tables)
        except Exception as e:
            self.file_handler.log_step(COMBINED, "merged", status="failed", message=str(e))
            raise
        path = self.file_handler.save_table(combined, self.file_handler.table_path())
        self.file_handler.log_step(
            COMBINED, "merged", message=f"{combined.shape[0]} genes x {combined.shape[1]} samples", file_names=[path]
        )
        return combined, ordered, merger

    def batch_correct(self, combined: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
        corrector = BatchCorrector(self.config["batch_correction"], logger=self.logger)
        try:
            corrected, result = corrector.correct(combined, metadata)
        except Exception as e:
            self.file_handler.log_step(COMBINED, "batch_corrected", status="failed", message=str(e))
            raise
        files = [self.file_handler.save_table(corrected, self.file_handler.table_path(batch_corrected=True))]
        if corrector.prior_plots:
            plot = corrector.plot_priors(
                result, os.path.join(self.config["output_dir"], f"combined_{self.config['table_prefix']}_BN_priors.png")
            )
            if plot:
                files.append(plot)
        self.file_handler.log_step(
            COMBINED, "batch_corrected",
            message=f"{corrected.shape[1]} samples across batches {result.batch_levels}", file_names=files,
        )
        return corrected

    def write_slices(self, merger: ExpressionMerger, combined, batch_corrected, metadata):
        combined_slices = merger.slice_studies(combined, metadata, self.studies)
        bn_slices = merger.slice_studies(batch_corrected, metadata, self.config["batch_correction"]["studies"])
        for study_id, table in combined_slices.items():
            path = self.file_handler.save_table(table, self.file_handler.table_path(study_id=study_id))
            files = [path]
            if study_id in bn_slices:
                files.append(self.file_handler.save_table(
                    bn_slices[study_id], self.file_handler.table_path(batch_corrected=True, study_id=study_id)
                ))
            self.file_handler.log_step(study_id, "sliced", message=f"{table.shape[1]} samples", file_names=files)
        return combined_slices, bn_slices

    def build_signatures(self, bn_slices: Dict[str, pd.DataFrame], metadata: pd.DataFrame):
        signatures, selected = {}, {}
        for study_id, settings in self.config["signatures"].items():
            builder = SignatureBuilder(
                study_id,
                groups=settings["groups"],
                top_k=settings["top_k"],
                engine=settings["engine"],
                rscript=self.config.get("rscript"),
                logger=self.logger,
            )
            try:
                signature, genes, _ = builder.build(bn_slices[study_id], metadata)
            except Exception as e:
                self.file_handler.log_step(study_id, "signature_written", status="failed", message=str(e))
                raise
            path = write_signature(signature, self.file_handler.signature_path(study_id))
            self.file_handler.log_step(
                study_id, "signature_written", message=f"{len(genes)} genes", file_names=[path]
            )
            signatures[study_id], selected[study_id] = signature, genes
        return signatures, selected

    # ------------------ Driver ------------------

    def run(self) -> PipelineOutputs:
        """
        Executes every step in order.

        Returns:
            PipelineOutputs: In-memory copies of the written tables.
        """
        self.logger.info(f"Starting SCAN pipeline for studies: {self.studies}")
        if self.download:
            self.acquire()

        metadata = load_sample_metadata(self.config["sample_metadata"])
        gene_tables = {}
        for study_id in self.studies:
            gene_tables[study_id] = self.collapse_study(study_id, self.normalize_study(study_id))

        combined, ordered, merger = self.merge(gene_tables, metadata)
        batch_corrected = self.batch_correct(combined, ordered)
        combined_slices, bn_slices = self.write_slices(merger, combined, batch_corrected, ordered)
        signatures, selected = self.build_signatures(bn_slices, ordered)

        self.logger.info("SCAN pipeline completed.")
        return PipelineOutputs(
            combined=combined,
            metadata=ordered,
            batch_corrected=batch_corrected,
            combined_slices=combined_slices,
            batch_corrected_slices=bn_slices,
            signatures=signatures,
            signature_genes=selected,
        )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="SCAN normalization, ComBat batch correction and group signatures")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Pipeline YAML configuration")
    parser.add_argument("--base-dir", help="Directory relative config paths are resolved against (default: CWD)")
    parser.add_argument("--download", action="store_true", help="Download missing raw archives and annotations from GEO")
    parser.add_argument("--force-normalize", action="store_true", help="Recompute normalized matrices even if cached")
    parser.add_argument("--no-run-log", action="store_true", help="Do not record step outcomes in the run-log database")
    args = parser.parse_args(argv)

    config = load_pipeline_config(args.config, base_dir=args.base_dir)
    pipeline = ScanPipeline(
        config, download=args.download, force_normalize=args.force_normalize, record_runs=not args.no_run_log
    )
    try:
        pipeline.run()
    except Exception as e:
        pipeline.logger.critical(f"Pipeline failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
