# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Usage (injected by the controller as an init container):
    GS_LEDGER_NAME=db-locks GS_ORDINAL_BASE=3 python -m gratefulset.admission_gate
"""

import sys

from gratefulset.admission_gate.gate import create_gate_parser, run_gate
from gratefulset.runtime.logging import configure_gratefulset_logging


def main():
    configure_gratefulset_logging()
    args = create_gate_parser().parse_args()
    sys.exit(run_gate(args))


if __name__ == "__main__":
    main()
