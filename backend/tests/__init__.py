# Test environment must be in place before waitlist_billing.config is first read
import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ.pop("TOURNAMENT_KEYWORDS", None)

# Force SQLModel table registration at test discovery time
from waitlist_billing.database import import_models  # noqa: E402

import_models()
