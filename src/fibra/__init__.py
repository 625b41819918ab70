"""
fibra-spine - back office for Mexican real-estate investment trusts (FIBRAs).

Packages:
    core           errors, logging, settings, hashing, period tags
    execution      job context, cancellation, crawl-delay limiting, retry, DLQ
    observability  in-process metrics and the per-stage observer
    documents      discovery -> download -> parse -> facts pipeline
    distributions  dividend import, reconciliation and yields
    portfolio      upload, valuation and TWR/MWR recalculation
    adapters       in-memory, HTTP and PDF implementations of the ports
    cli            typer command line
"""

__version__ = "0.1.0"
