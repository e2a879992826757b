# -*- coding: utf-8 -*-

UNITS_TABLE = "units"
JOBS_TABLE = "batch_jobs"
RESULTS_TABLE = "batch_results"
ARTIFACTS_TABLE = "artifacts"
CLAIMS_TABLE = "claims"

# Table name -> primary key field
TABLE_KEYS = {
    UNITS_TABLE: "id",
    JOBS_TABLE: "id",
    RESULTS_TABLE: "id",
    ARTIFACTS_TABLE: "id",
    CLAIMS_TABLE: "key",
}
