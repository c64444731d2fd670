class PipelineError(Exception):
    """
    Base class for errors raised by the expression pipeline.
    """
    pass


class NormalizationError(PipelineError):
    """
    Raised when a normalization backend fails or produces no expression values.
    """
    def __init__(self, study_id, reason):
        self.study_id = study_id
        self.reason = reason
        super().__init__(f"Normalization failed for {study_id}: {reason}")


class AnnotationError(PipelineError):
    """
    Raised when a platform annotation table lacks the configured probe or symbol column.
    """
    def __init__(self, annotation_path, missing_columns):
        self.annotation_path = annotation_path
        self.missing_columns = missing_columns
        message = f"Annotation file {annotation_path} is missing columns: {missing_columns}"
        super().__init__(message)


class EmptyJoinError(PipelineError):
    """
    Raised when the inner join of gene-level tables keeps no genes.
    """
    def __init__(self, study_ids):
        self.study_ids = study_ids
        super().__init__(f"No gene symbols shared across studies: {study_ids}")


class SampleMetadataError(PipelineError):
    """
    Raised when expression columns cannot be matched one-to-one with sample metadata rows.
    """
    def __init__(self, samples, reason="no metadata row"):
        self.samples = samples
        self.reason = reason
        super().__init__(f"Sample metadata problem ({reason}): {samples}")


class ContrastDesignError(PipelineError):
    """
    Raised when a one-vs-rest design cannot be built for a reference study.
    """
    pass


class DifferentialExpressionError(PipelineError):
    """
    Raised when the limma contrast fit cannot be run or returns incomplete tables.
    """
    def __init__(self, study_id, reason):
        self.study_id = study_id
        self.reason = reason
        super().__init__(f"Differential expression failed for {study_id}: {reason}")
