"""Change-event indexing pipeline: decode, dispatch, retry, bulk and consume."""
