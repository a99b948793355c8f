class AnalysisEndpoint:
    name = "analysis"

    async def analyze(self, image, context: dict, on_progress=None):
        """Send one still plus its context; return an AnalysisResult.

        Raises NetworkFailure when the service cannot be reached and
        ServerRejected(message) when it answers with an error.
        on_progress, when given, is called with each ProgressEvent.
        """
        raise NotImplementedError
