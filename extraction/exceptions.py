"""Error taxonomy for the extraction pipeline."""


class ExtractionError(Exception):
    """Base class for pipeline errors."""


class PermanentExtractionError(ExtractionError):
    """Not worth retrying; the orchestrator marks the book failed with this message."""


class PageSplitError(PermanentExtractionError):
    pass


class EmptyDocumentError(PageSplitError):
    pass


class BookNotFoundError(PermanentExtractionError):
    def __init__(self, book_id: int):
        super().__init__(f"Book {book_id} not found")
        self.book_id = book_id


class VisionResponseError(ExtractionError):
    """The model answered, but not with anything we can parse."""


class DuplicateDocumentError(ExtractionError):
    def __init__(self, match):
        super().__init__(f"Duplicate of book {match.book_id} ({match.matched_on})")
        self.match = match
