import os

# litellm fetches its model cost map over the network at import time; offline,
# that fetch deadlocks the import. Use the bundled local copy for tests.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")
