"""
FPL Live Backend: entry point and re-exports.

Code lives in fpl_live/ modules:
- config.py:      season scoring rules + formation, API and polling configs
- constants.py:   FPL identifiers, chip names, rules lookup
- models.py:      snapshot dataclasses, derived results, response schemas
- calculators.py: BPS prediction, bonus allocation, defensive contributions
- squad.py:       auto-subs, captaincy failover, squad total
- cache.py:       DataCache singleton for raw API payloads
- services.py:    HTTP client, fetchers, snapshot building, live poller
- endpoints.py:   FastAPI app

Tests import from `main`; star-imports re-export everything.
"""

from fpl_live.config import *       # noqa: F401,F403
from fpl_live.constants import *    # noqa: F401,F403
from fpl_live.models import *       # noqa: F401,F403
from fpl_live.cache import *        # noqa: F401,F403
from fpl_live.calculators import *  # noqa: F401,F403
from fpl_live.squad import *        # noqa: F401,F403
from fpl_live.services import *     # noqa: F401,F403
from fpl_live.endpoints import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
