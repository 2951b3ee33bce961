# read_aggregator/errors.py


class PipelineError(Exception):
    """Base class for read-tracking pipeline errors.

    `retryable` tells the job queue whether a failed job should be
    redelivered or moved straight to the dead-letter list.
    """

    retryable = True


class RateLimitExceeded(PipelineError):
    def __init__(self, identity: str, article_id: str, attempts: int):
        self.identity = identity
        self.article_id = article_id
        self.attempts = attempts
        super().__init__(
            f"Too many reads of {article_id} by {identity} ({attempts} in window)"
        )


class ArticleNotFound(PipelineError):
    retryable = False

    def __init__(self, article_id: str):
        self.article_id = article_id
        super().__init__(f"Article {article_id} not found")


class PersistenceFailure(PipelineError):
    """A consumer could not write to the relational store."""


class AggregationInconsistency(PipelineError):
    """Aggregation input that only a clock or store defect can produce."""

    retryable = False


class InvalidJob(PipelineError):
    """Payload or job kind the queue cannot dispatch."""

    retryable = False
