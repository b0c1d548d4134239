# API Module - local HTTP surface for the vault
#
# FastAPI app bound to localhost; every vault route requires the
# per-process X-Session-Token header.
