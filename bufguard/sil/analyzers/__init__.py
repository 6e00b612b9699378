"""
Analyzers over the bufguard IR.

- buffer_catalog: fixed-capacity buffer declarations and constant folding
- taint_propagation: fixed-point taint dataflow, intra- and interprocedural
- sink_matcher: copy-style sinks fed by tainted data
- format_checker: scanf/sprintf format strings against buffer capacities
"""
