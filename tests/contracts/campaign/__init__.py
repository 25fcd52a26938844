"""
Campaign Engine Test Contracts

- data_contract.py: engine models re-exported for tests, plus
  CampaignTestDataFactory for campaigns, jobs, recipients and appointments
"""
