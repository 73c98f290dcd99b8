"""Persistency layer — reconciliation of a versioned knowledge bundle.

Layout (relative to the project root, default layer dir ``ai``):
    <project>/
    ├── .persistency-path                  # Pointer: which dir holds the layer
    ├── persistency.upsert.prompt.mdc      # Regenerated prompt for the upsert launcher
    └── ai/
        ├── ai-bootstrap.mdc               # Run-level summary, read by the analyzer
        ├── ai-start.sh / ai-upsert.sh     # Launchers for the agent CLI
        ├── .persistency-meta.json         # Metadata record, written last
        ├── functional/                    # foundation.mdc + index.mdc
        ├── technical/                     # foundation.mdc + index.mdc, snapshots/
        └── ai-meta/                       # foundation.mdc + index.mdc,
            ├── migration-brief.mdc        #   regenerated every run
            ├── assets/                    #   staged operator assets
            └── legacy/<timestamp>/        #   staged previous layers

Foundation files are only rewritten with ``force``; index files are created
once and then belong to the agent.
"""
