# mdrun/config package
# Configuration registry: runtime.yaml + MDRUN_CONFIG user file + MDRUN_* env vars.
