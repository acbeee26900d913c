from typing import Iterator
from google.cloud import storage as gcs_storage
from app.config import get_settings

def get_storage_client():
    return gcs_storage.Client(project=get_settings().GCP_PROJECT_ID or None)

def get_bucket():
    client = get_storage_client()
    return client.bucket(get_settings().GCS_BUCKET_NAME)

def user_media_prefix(user_id: str) -> str:
    """Namespace prefix under which all of a user's media objects live."""
    return f"{get_settings().USER_MEDIA_PREFIX.rstrip('/')}/{user_id}/"

def iter_file_pages(prefix: str, page_size: int = 1000) -> Iterator[list[str]]:
    """Yield the names of the objects under ``prefix``, one listing page at a
    time.  Each ``next()`` is a blocking GCS request."""
    bucket = get_bucket()
    for page in bucket.list_blobs(prefix=prefix, page_size=page_size).pages:
        yield [blob.name for blob in page]

def delete_file(path: str) -> None:
    """Delete a file from GCS bucket."""
    bucket = get_bucket()
    blob = bucket.blob(path)
    blob.delete()
