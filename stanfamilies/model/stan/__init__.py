# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan integration for stanfamilies.

This submodule turns regression models into Stan programs and compiles and
samples them through CmdStanPy. Compiled executables are cached by a hash of
the program text, so refitting an identical model with new draws or different
sampler settings does not recompile.
"""
