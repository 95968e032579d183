"""
Passes module: signed, stateful admission credentials.

- Issuance: reserve a row with a provisional payload, then finalize once the id is known
- Scanning: decode, verify, check status, then a conditional single-use transition
- Every scan attempt is written to the append-only scan log
"""
