# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

VERSION = "0.1.0"
