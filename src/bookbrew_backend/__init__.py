"""
BookBrew Backend - build orchestration API for print-ready PDFs

This package turns Markdown manuscripts into PDFs through LaTeX templates
(layout, cover and imposition). It provides:

- Fingerprinting of build requests so identical builds share one render
- A bounded, deduplicating job scheduler with retries and cancellation
- A TTL + LRU result cache and a content-addressed artifact store
- A Pandoc / XeLaTeX / pdftk renderer behind an abstract adapter
- Optional S3 publishing and a SQLite job history

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - build_service: Facade used by the HTTP routes
    - job_scheduler: Admission, deduplication, workers and retries
    - result_cache / artifact_store: Result reuse and PDF storage
    - renderer / latex_renderer: Renderer contract and the LaTeX toolchain
    - templates / imposition: Pure template and page-arrangement helpers
    - configuration: Settings loading and merging logic

Usage:
    Run the API server with:
        uvicorn bookbrew_backend.main:app --host 0.0.0.0 --port 8000
"""
