"""Port implementations: in-memory, HTTP (httpx) and PDF/OCR."""
