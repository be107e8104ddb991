"""
Document dashboard → Batch upload → Job tracking → Progress & results

Submits batches of invoices, supporting documents and bank statements for
server-side processing, tracks every resulting job to completion and
reports live progress, timing and a unified result summary.
"""

__version__ = "0.1.0"
