"""
The synchronous evaluator seam.

Any evaluator plugged into the driver must be a pure function of
(data, expression, environment, function results): given the same inputs and
the same completed calls it must produce the same output. The fixpoint loop
depends on that property; re-running an impure evaluator is not guaranteed to
converge.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Union

import fhirpathpy
from antlr4 import CommonTokenStream, InputStream, Token
from antlr4.error.ErrorListener import ErrorListener
from fhirpathpy.parser.generated.FHIRPathLexer import FHIRPathLexer
from fhirpathpy.parser.generated.FHIRPathParser import FHIRPathParser

from fpasync.fpasync_outcome import EvaluationFailed, OperationOutcomeError


class SyncEvaluator(Protocol):
    def evaluate(self,
                 data: Any,
                 expression: str,
                 environment: Dict[str, Any],
                 functions: Dict[str, Any],
                 model: Any = None) -> List[Any]:
        ...


class _RaisingErrorListener(ErrorListener):
    def syntaxError(self, recognizer, offendingSymbol, line, column, msg, e):
        raise EvaluationFailed(f"Syntax error at {line}:{column}: {msg}")


@lru_cache(maxsize=256)
def check_syntax(expression: str) -> None:
    """
    Parse `expression` with fhirpathpy's grammar and raise EvaluationFailed on
    the first syntax error. fhirpathpy itself recovers from bad input silently.
    """
    listener = _RaisingErrorListener()
    lexer = FHIRPathLexer(InputStream(expression))
    lexer.removeErrorListeners()
    lexer.addErrorListener(listener)
    tokens = CommonTokenStream(lexer)
    parser = FHIRPathParser(tokens)
    parser.removeErrorListeners()
    parser.addErrorListener(listener)
    parser.expression()
    trailing = tokens.LT(1)
    if trailing is not None and trailing.type != Token.EOF:
        raise EvaluationFailed(
            f"Syntax error at {trailing.line}:{trailing.column}: unexpected {trailing.text!r}"
        )


def resolve_model(model: Union[str, Dict[str, Any], None]) -> Optional[Dict[str, Any]]:
    """Map a model name ('r4', 'r5', 'stu3', 'dstu2') onto fhirpathpy's model data."""
    if model is None or isinstance(model, dict):
        return model
    from fhirpathpy.models import models
    key = str(model).lower()
    # models is a defaultdict; indexing an unknown name would hand back {}
    if key not in models:
        raise EvaluationFailed(f"Unknown FHIR model {model!r}; expected one of {', '.join(sorted(models))}")
    return models[key]


class FhirpathEvaluator:
    """Runs one pass with fhirpathpy, exposing handlers through its userInvocationTable."""

    def evaluate(self,
                 data: Any,
                 expression: str,
                 environment: Dict[str, Any],
                 functions: Dict[str, Any],
                 model: Any = None) -> List[Any]:
        table = {
            name: {'fn': handler, 'arity': handler.arity}
            for name, handler in functions.items()
        }
        fhir_model = resolve_model(model)
        check_syntax(expression)
        try:
            result = fhirpathpy.evaluate(
                data, expression, dict(environment), fhir_model, {'userInvocationTable': table},
            )
        except OperationOutcomeError:
            raise
        except Exception as e:
            raise EvaluationFailed(f"{type(e).__name__}: {e}") from e
        return list(result or [])
