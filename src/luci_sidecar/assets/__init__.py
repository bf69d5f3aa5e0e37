"""
Package data: the embedded default config (`default.yaml`) and, in release builds, the
`lucidoitdoit-0.1-py3-none-any.whl` installer archive copied in by the packaging step.
"""
