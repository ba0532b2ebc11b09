"""Serverless entry point.

Lambda-style hosts call ``handler`` per request. The snapshot refresher
thread is not started here; leaderboards are kept fresh by calling
``/jobs/refresh-snapshot`` from the platform's cron.
"""

from mangum import Mangum

from ledger.api import app

handler = Mangum(app, lifespan="off")
