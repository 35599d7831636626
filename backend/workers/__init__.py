# Workers: one process per pipeline stage, coordinating through the broker and the DB.
# Run from backend/ with:
#   python -m workers.extractor_worker
#   python -m workers.generator_worker
#   python -m workers.validator_worker
#   python -m workers.publisher_worker
#   python -m workers.resolver_worker
#   python -m workers.dispute_agent_worker
#   python -m workers.scheduler_worker
