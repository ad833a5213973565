"""Transactional core: ledgers, gating, booking state machine, condition reports, relations."""
